import sys

from ledger_sync.cli import main

sys.exit(main())
