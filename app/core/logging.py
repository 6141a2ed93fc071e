import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once at startup."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # web3 and httpx are chatty at INFO
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
