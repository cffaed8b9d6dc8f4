import sys

from costpulse.cli import main

sys.exit(main())
