from porttop.app import main

main()
