"""
Loom Provisioner
================

The daemon that runs on every provisioning host.

What it does:
  1. Registers this host with the Loom server as "<hostname>.<pid>"
  2. Accepts tenant add / edit / delete requests on a local HTTP API
  3. Runs each tenant's workers as child processes
  4. Reports per-tenant worker counts to the server every 10s
  5. Reaps exited workers on SIGCHLD
  6. On SIGTERM / SIGINT: stops every worker, waits for them, unregisters

Requirements:
  pip install requests psutil

Usage:
  python -m provisioner.agent --uri http://loom-server:55054 --worker-command "loom-worker"
"""

__version__ = "0.1.0"
