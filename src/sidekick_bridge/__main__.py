"""Allow ``python -m sidekick_bridge``."""

from .cli import main

if __name__ == "__main__":
    main()
