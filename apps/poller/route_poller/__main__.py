from .poll_route import main

main()
