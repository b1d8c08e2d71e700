import sys

from coldvm import cli

sys.exit(cli.main())
