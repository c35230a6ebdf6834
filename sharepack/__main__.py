import sys

from sharepack.cli import main

sys.exit(main())
