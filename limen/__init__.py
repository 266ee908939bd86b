"""
Limen - single-host process, network and port monitor with safety-gated
termination and baseline anomaly detection.
"""
__version__ = "1.0.0"
