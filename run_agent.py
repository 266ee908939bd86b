"""
Limen Agent Entry Point
Runs the polling loop in the foreground and prints each cycle's anomalies.
"""
import argparse
import os
import sys
import time

sys.path.insert(0, os.getcwd())

from limen.agent.engine import LimenCore, LimenMonitor
from limen.core.config import Config
from limen.utils.formatting import format_bytes_per_second
from limen.utils.logger import Logger


def main() -> None:
    parser = argparse.ArgumentParser(description="Limen host monitor")
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between cycles")
    parser.add_argument("--no-detection", action="store_true", help="Disable anomaly detection")
    args = parser.parse_args()

    config = Config(config_path=args.config)
    Logger().configure(log_file=config.log_file, level=config.log_level)
    interval = args.interval or config.refresh_interval

    monitor = LimenMonitor(LimenCore.from_config(config),
                           detection_enabled=config.detection_enabled and not args.no_detection)
    print("[+] Starting Limen Agent...")

    seen = set()
    monitor.start_monitoring(interval)
    try:
        while True:
            time.sleep(interval)
            stats = monitor.network_stats
            if stats is not None:
                print(f"💓 {len(monitor.processes)} processes | {len(monitor.connections)} sockets | "
                      f"{len(monitor.ports)} listening | "
                      f"in {format_bytes_per_second(stats.bytes_in_per_second)} "
                      f"out {format_bytes_per_second(stats.bytes_out_per_second)}")
            for anomaly in monitor.anomalies:
                if anomaly.id in seen:
                    continue
                seen.add(anomaly.id)
                print(f"  [{anomaly.severity.label.upper()}] {anomaly.title} - {anomaly.description}")
    except KeyboardInterrupt:
        print("\n🛑 Agent stopped by user.")
    finally:
        monitor.stop_monitoring(timeout=5)
        monitor.core.shutdown()


if __name__ == "__main__":
    main()
