"""CLI entry point for glyphforge.cli module.

Enables execution via: python -m glyphforge.cli
"""

from glyphforge.cli.requeue_jobs import main

if __name__ == "__main__":
    main()
