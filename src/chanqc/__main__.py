"""
Entry point for running quality control as a module.

Usage:
    python -m chanqc --input recording.fif [arguments]
"""

from chanqc.cli import main

if __name__ == "__main__":
    main()
