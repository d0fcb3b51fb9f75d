from streamarchive.CLI import main

if __name__ == "__main__":
    main()
