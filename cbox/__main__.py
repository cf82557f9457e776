"""Allow ``python -m cbox``; helper processes re-invoke the CLI this way."""

from cbox.cli import main

if __name__ == "__main__":
    main()
