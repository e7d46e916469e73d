"""Building blocks for a forwarding DNS server: matchers, query context, transport and servers."""

__version__ = "0.1.0"