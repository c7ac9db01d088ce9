"""Allow running as python -m nestor."""

from nestor.cli import main

if __name__ == "__main__":
    main()
