import sys

from remotebridge.cli import main

sys.exit(main())
