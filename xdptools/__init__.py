"""Support library for XDP tools: logging, option parsing, statistics and PcapNG writing."""

__version__ = "1.4.3"

__all__ = ["log", "xpcapng", "util", "params", "stats"]