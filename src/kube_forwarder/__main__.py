import sys

from kube_forwarder.cli import main

if __name__ == "__main__":
    sys.exit(main())
