import sys

from selfhost_migrate.cli import main

sys.exit(main())
