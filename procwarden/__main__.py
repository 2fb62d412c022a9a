from procwarden.cli import main

main()
