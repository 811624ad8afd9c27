import sys

from tablerepair.cli import main

sys.exit(main())
