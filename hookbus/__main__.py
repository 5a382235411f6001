"""Allow running hookbus as a module: python -m hookbus <command>."""

from hookbus.runner import main

if __name__ == "__main__":
    main()
