"""idelink - relay an IDE automation host to stdio JSON-RPC clients.

A short-lived relay process speaks line-delimited JSON-RPC on stdin/stdout
and forwards calls over HTTP to a long-running IDE host instance, which it
finds through a file-based instance registry.
"""

__version__ = "0.1.0"
