"""Health endpoint — the container's single liveness signal."""
