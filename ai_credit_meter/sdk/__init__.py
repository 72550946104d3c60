"""
SDK for AI Credit Meter.

Provides the client for the upstream AI completion service.
"""

from .upstream import UpstreamChunk, UpstreamGateway, UpstreamReply

__all__ = ["UpstreamChunk", "UpstreamGateway", "UpstreamReply"]
