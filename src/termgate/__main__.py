"""Allow running as python -m termgate."""

from termgate.cli import main

if __name__ == "__main__":
    main()
