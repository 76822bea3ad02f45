import sys

from pvetemplates.cli import main

sys.exit(main())
