import sys

from keyward.cli import main

sys.exit(main())
