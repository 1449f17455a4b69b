"""Allow running the CLI with ``python -m anton``."""

from anton.cli import main

if __name__ == "__main__":
    main()
