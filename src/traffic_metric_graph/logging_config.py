from __future__ import annotations

import logging.config
import os


def configure_logging(level: str | None = None) -> None:
    """Route library loggers through a rich console handler on stderr."""
    level = (level or os.getenv('TRAFFIC_MG_LOG_LEVEL', 'INFO')).upper()
    logging.config.dictConfig(
        {
            'version': 1,
            'disable_existing_loggers': False,
            'formatters': {
                'rich': {'format': '%(name)s | %(message)s', 'datefmt': '[%X]'},
            },
            'handlers': {
                'console': {
                    'class': 'rich.logging.RichHandler',
                    'level': level,
                    'formatter': 'rich',
                    'rich_tracebacks': True,
                    'show_path': False,
                },
            },
            'loggers': {
                # osmnx/fiona are chatty at INFO
                'osmnx': {'level': 'WARNING'},
                'fiona': {'level': 'WARNING'},
                'pyogrio': {'level': 'WARNING'},
            },
            'root': {'level': level, 'handlers': ['console']},
        }
    )
