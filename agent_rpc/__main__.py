import sys

from agent_rpc.cli import main

sys.exit(main())
