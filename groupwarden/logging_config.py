# Copyright (c) 2025 sprowii
import logging


def configure_logging() -> logging.Logger:
    logging.basicConfig(
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        level=logging.INFO,
    )
    return logging.getLogger("groupwarden")


log = configure_logging()
