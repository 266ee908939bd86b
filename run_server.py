"""
Limen Local API Entry Point
Serves the monitor over HTTP on the configured loopback address.
"""
import os
import sys

import uvicorn

sys.path.insert(0, os.getcwd())

from limen.core.config import Config

if __name__ == "__main__":
    config = Config()
    print(f"🚀 Starting Limen API on {config.api_host}:{config.api_port}...")
    uvicorn.run("limen.server.server:build_app", factory=True, host=config.api_host, port=config.api_port)
