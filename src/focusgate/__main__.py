"""Allow running as ``python -m focusgate``."""

from .cli import main

if __name__ == "__main__":
    main()
