#!/usr/bin/env python3
"""Script to run the orchestrator as an API process plus a worker process."""

import os
import subprocess
import sys
import time

import structlog

logger = structlog.get_logger()

COMPONENTS = [
    # The API process serves requests and runs the health monitor.
    ("API", {"RUN_WORKERS": "false", "RUN_MONITOR": "true"}),
    # The worker process consumes the queues and exposes its own /health.
    ("Worker", {"RUN_WORKERS": "true", "RUN_MONITOR": "false", "API_PORT": "8001"}),
]


def run_component(name, overrides):
    """Run one orchestrator process with environment overrides."""
    env = dict(os.environ, **overrides)
    cmd = [sys.executable, "-m", "orchestrator.main"]
    logger.info(f"Starting {name}", command=" ".join(cmd), overrides=overrides)
    return subprocess.Popen(cmd, env=env)


def main():
    """Main function to run all components."""
    processes = []

    try:
        for name, overrides in COMPONENTS:
            processes.append((name, run_component(name, overrides)))
            # Let the first process create tables before the next one starts
            time.sleep(2)

        logger.info("All components started. Press Ctrl+C to stop.")

        while True:
            time.sleep(1)

            for name, process in processes:
                if process.poll() is not None:
                    logger.error(f"{name} process died", returncode=process.returncode)
                    return

    except KeyboardInterrupt:
        logger.info("Shutting down all components...")

    finally:
        for name, process in processes:
            if process.poll() is not None:
                continue
            logger.info(f"Stopping {name}")
            process.terminate()
            try:
                process.wait(timeout=35)
            except subprocess.TimeoutExpired:
                logger.warning(f"Force killing {name}")
                process.kill()

        logger.info("All components stopped")


if __name__ == "__main__":
    main()
