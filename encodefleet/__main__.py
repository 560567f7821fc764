import sys

from encodefleet.cli import main

sys.exit(main())
