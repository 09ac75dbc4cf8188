from review_board.cli import main

main()
