from backrest.cli import main

main()
