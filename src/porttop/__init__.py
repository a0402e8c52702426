"""porttop - watch network connections and the processes holding them."""

__version__ = "0.1.0"
