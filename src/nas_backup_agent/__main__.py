# pyright: standard

"""nas-backup-agent: nas_backup_agent/__main__.py.

Image and file backups of a machine to a network share.
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
