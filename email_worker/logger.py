"""Logging helpers for the email delivery worker."""

import logging

def get_logger(name: str = "EmailWorker") -> logging.Logger:
    """Return the named :class:`logging.Logger` used by the worker.

    Note: handlers and format are configured once via logging.basicConfig()
    in the process entry point (``email_worker.worker.main``).
    """
    return logging.getLogger(name)
