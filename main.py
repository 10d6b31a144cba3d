"""Entry point of the email delivery worker.

Settings come from config.ini (see ``config.ini.example``) with environment
variables as fallbacks; see :mod:`email_worker.config` for the full list.
"""

from email_worker.worker import main


if __name__ == "__main__":
    main()
