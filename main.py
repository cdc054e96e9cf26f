#!/usr/bin/env python3
"""
Development launcher for castdeck.

- Reads settings from ./config.yaml (or CASTDECK_CONFIG)
- Runs the control service in the foreground with debug logging
- Ctrl-C exits cleanly
"""

import os
import sys

from castdeck.web_server import cli_main


def main():
    os.environ.setdefault("DEV", "1")
    print("[dev] Running castdeck (Ctrl-C to exit)")
    return cli_main(sys.argv[1:])


if __name__ == "__main__":
    sys.exit(main())
