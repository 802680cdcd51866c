"""
This is a minimal entry point script for the supervisor daemon.

Its sole responsibility is to set the process title, install signal handlers,
instantiate the ProcessManager and run it against an ecosystem file.
"""
import setproctitle
from procwarden.settings import SUPERVISOR_PROC_TITLE
setproctitle.setproctitle(SUPERVISOR_PROC_TITLE)

import sys
import signal
import logging
import argparse
from procwarden.local.supervisor import ProcessManager

manager = None


def handle_shutdown_signal(signum, frame):
    """Handle shutdown signals gracefully."""
    logging.getLogger(__name__).info(f"Signal {signum} received, shutting down supervisor.")
    if manager:
        manager.shutdown_signal_received.set()


def main(argv=None) -> int:
    global manager
    parser = argparse.ArgumentParser(prog="procwarden-supervisor")
    parser.add_argument("ecosystem", help="Path to the ecosystem file.")
    parser.add_argument("--env", dest="env_name", default=None, help="Deployment environment to apply.")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level.")
    args = parser.parse_args(argv)

    manager = ProcessManager()
    signal.signal(signal.SIGTERM, handle_shutdown_signal)
    signal.signal(signal.SIGINT, handle_shutdown_signal)
    return manager.run(args.ecosystem, args.env_name, verbose=args.verbose)


if __name__ == "__main__":
    sys.exit(main())
