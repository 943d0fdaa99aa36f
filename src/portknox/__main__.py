"""Run the forwarding service: ``python -m portknox``."""

import asyncio

from .common.exceptions import ConfigurationError
from .service import run


def main() -> None:
    try:
        asyncio.run(run())
    except ConfigurationError as e:
        raise SystemExit(f"portknox: {e}") from e


if __name__ == "__main__":
    main()
