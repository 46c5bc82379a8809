"""Allows running chatters as a module:
    python -m chatters
"""

from chatters.cli import main

if __name__ == "__main__":
    main()
