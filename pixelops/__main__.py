import sys

from pixelops.cli import main

sys.exit(main())
