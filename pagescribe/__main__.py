from pagescribe.cli import main


main()
