#!/usr/bin/env python3
"""Start the import driver worker with superuser warnings suppressed for containers."""

import sys
import warnings

warnings.filterwarnings('ignore', category=UserWarning, message='.*superuser privileges.*')
warnings.filterwarnings('ignore', category=RuntimeWarning, message='.*superuser privileges.*')

from release_importer.core.config import get_settings  # noqa: E402
from release_importer.core.logging import configure_logging  # noqa: E402
from release_importer.workers.celery_app import celery_app  # noqa: E402

if __name__ == '__main__':
    settings = get_settings()
    configure_logging(settings.log_level)

    # Slices are short and checkpointed, so one process per container is enough.
    celery_app.worker_main(
        argv=[
            'worker',
            f'--loglevel={settings.log_level.lower()}',
            '--queues=imports',
            '--pool=solo',
            '--without-mingle',
            '--without-gossip',
        ]
        + sys.argv[1:]
    )
