import sys

from nodekeeper.worker import main

sys.exit(main())
