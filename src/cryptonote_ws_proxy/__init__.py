"""WebSocket to CryptoNote pool proxy with Stratum-style protocol translation.

Lets browser miners that speak a Stratum-like JSON-RPC dialect over WebSocket
mine against pools that speak line-delimited CryptoNote JSON-RPC over TCP.
"""

__version__ = "0.1.0"
