import sys

from p2pchat.main import main

sys.exit(main())
