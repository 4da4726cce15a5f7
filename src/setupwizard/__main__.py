"""Package entry point.

This module enables running the wizard with:

    python -m setupwizard ...
"""

from __future__ import annotations

from setupwizard.cli import main

if __name__ == "__main__":
    main()
