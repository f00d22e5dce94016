"""Entry point for running mailweave as a module.

Usage:
    python -m mailweave validate-config
    python -m mailweave --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env (MAILWEAVE_CONFIG_PATH) before the config module reads it

from mailweave.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
