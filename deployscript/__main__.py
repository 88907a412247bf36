from deployscript.cli import main

main()
