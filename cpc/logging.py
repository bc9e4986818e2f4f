"""Logging configuration for the cpc package."""
import logging
import sys

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(debug_mode: bool = False) -> None:
    """Configure root logging based on debug mode."""
    log_level = logging.DEBUG if debug_mode else logging.INFO
    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    # Noisy libraries stay at WARNING unless we're debugging
    if not debug_mode:
        for noisy in ('paramiko', 'urllib3', 'kubernetes.client.rest', 'ansible_runner'):
            logging.getLogger(noisy).setLevel(logging.WARNING)
