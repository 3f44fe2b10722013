"""Interactive single-socket TCP shell"""

__version__ = "0.1.0"
