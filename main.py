#!/usr/bin/env python3
"""
Development launcher for the EAS listener archive.

- Runs the archive web server in the foreground with dev logging
- Ctrl-C exits cleanly
- Ctrl-R reloads config and restarts the web server
"""

import logging
import os
import signal
import sys
import termios
import threading
import time
import tty

from eas_listener import config as config_module
from eas_listener.web_server import WebServerHandle, start_web_server_in_thread


class KeyWatcher(threading.Thread):
    def __init__(self):
        super().__init__(daemon=True)
        self.fd = sys.stdin.fileno()
        self.old_settings = termios.tcgetattr(self.fd)
        tty.setcbreak(self.fd)
        self.restart_requested = False

    def run(self):
        try:
            while True:
                ch = os.read(self.fd, 1)
                if not ch:
                    continue
                if ch == b"\x03":  # Ctrl-C
                    os.kill(os.getpid(), signal.SIGINT)
                elif ch == b"\x12":  # Ctrl-R
                    self.restart_requested = True
                    os.kill(os.getpid(), signal.SIGINT)
        finally:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self.old_settings)


def _start_dev_web_server() -> WebServerHandle:
    """Start the archive server on the configured address."""

    cfg = config_module.reload_cfg()
    server_cfg = cfg.get("web_server", {})
    return start_web_server_in_thread(
        host=str(server_cfg.get("listen_host", "0.0.0.0")),
        port=int(server_cfg.get("listen_port", 8080)),
        cfg=cfg,
        access_log=True,
    )


def main():
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    print("[dev] Running archive web server (Ctrl-C to exit, Ctrl-R to restart)")

    while True:
        web_server = _start_dev_web_server()
        watcher = KeyWatcher()
        watcher.start()
        try:
            while True:
                time.sleep(1.0)
        except KeyboardInterrupt:
            pass
        finally:
            print("[dev] Stopping archive web server ...")
            web_server.stop()
            # Always restore terminal mode after the server is down
            termios.tcsetattr(watcher.fd, termios.TCSADRAIN, watcher.old_settings)

        if watcher.restart_requested:
            print("[dev] Restart requested via Ctrl-R")
            continue
        print("[dev] Exiting dev mode")
        break


if __name__ == "__main__":
    sys.exit(main())
