import sys

from grafana_provisioner.cli import main

sys.exit(main())
