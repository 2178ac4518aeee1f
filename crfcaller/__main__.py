import sys

from crfcaller.cli import main

sys.exit(main())
