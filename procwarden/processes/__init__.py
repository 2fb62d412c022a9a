"""Process management — OS-level subprocess supervision.

- Supervisor: launch, monitor, restart and stop managed processes
- ProcessStateMachine: enforce valid lifecycle transitions
- probes: readiness checks whose results feed composite health
"""
