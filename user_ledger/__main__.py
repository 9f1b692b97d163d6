"""Allow `python -m user_ledger`."""

from .cli import main


if __name__ == "__main__":
    main()
