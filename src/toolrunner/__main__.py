"""toolrunner entry point.

Supports: python -m toolrunner
"""

from .app import main

if __name__ == "__main__":
    main()
