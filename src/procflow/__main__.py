"""procflow entry point.

Supports: python -m procflow
"""

from .app import main

if __name__ == "__main__":
    main()
