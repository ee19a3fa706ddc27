from __future__ import annotations

import logging
import sys

from .cli import main as cli_main


def main() -> int:
    try:
        return cli_main()
    except Exception as exc:
        logging.error("Fatal error: %s", exc, exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
