"""HDLC-style full-duplex link protocol: frame queue, link state machine and station API."""

__version__ = "0.1.0"
__all__ = ["hal", "frames", "fd_types", "fd_link", "fd_tx", "fd"]