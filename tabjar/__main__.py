import sys

from tabjar.server import main

sys.exit(main())
