import sys

from stackbackup.cli import main

sys.exit(main())
