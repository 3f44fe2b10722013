from sockshell.cli.main import main

main()
