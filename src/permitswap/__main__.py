import sys

from permitswap.main import main

sys.exit(main())
