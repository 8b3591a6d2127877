import sys

from carbonreg.cli import main

sys.exit(main())
