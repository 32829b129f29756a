"""
Allows `python -m bridge_relayer dispatch payload.json`.
"""

from .cli import main

if __name__ == "__main__":
    main()
