"""Run the credential sweeper as a standalone process."""

import logging
import time

from authgate.config import get_settings
from authgate.services.registry import build_services


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    services = build_services(get_settings())
    services.sweeper.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        services.sweeper.stop()


if __name__ == "__main__":
    main()
