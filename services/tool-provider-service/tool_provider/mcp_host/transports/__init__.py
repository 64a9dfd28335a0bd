from .http_client import HttpMcpClient

__all__ = ["HttpMcpClient"]
