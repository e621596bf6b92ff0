#!/usr/bin/env python3
"""
Development launcher for soundstate.

- Enables verbose logging (DEV=1) unless already set
- Runs the daemon in the foreground; Ctrl-C exits cleanly
"""

import os
import sys

from soundstate import daemon


def main():
    os.environ.setdefault("DEV", "1")
    print("[dev] Running soundstate daemon (Ctrl-C to exit)")
    return daemon.main(sys.argv[1:])


if __name__ == "__main__":
    sys.exit(main())
