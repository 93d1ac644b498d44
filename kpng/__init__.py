"""Service proxy state store, diff streams and nftables/iptables rule rendering."""

__version__ = "0.1.0"