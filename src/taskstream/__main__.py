"""taskstream entry point.

Supports: python -m taskstream
"""

from .app import main

if __name__ == "__main__":
    main()
