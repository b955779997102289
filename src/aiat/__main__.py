import sys

from aiat.client.launcher import main

sys.exit(main())
