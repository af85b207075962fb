"""CLI entry point for pixmuse.cli module.

Enables execution via: python -m pixmuse.cli (same as pixmuse.cli.reconcile_jobs)
"""

from pixmuse.cli.reconcile_jobs import main

if __name__ == "__main__":
    main()
