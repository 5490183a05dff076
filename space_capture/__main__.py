"""Package entry point for ``python -m space_capture``."""

from space_capture.cli import main

if __name__ == "__main__":
    main()
