"""
Testing utilities for nbs-sshfs.

Provides MockSSHServer and MockProxyServer for end-to-end tests of direct,
hop, proxy command and network proxy transports without Docker.
"""
from nbs_sshfs.testing.mock_server import MockServerConfig, MockSSHServer
from nbs_sshfs.testing.proxy_server import MockProxyServer, ProxyRequest

__all__ = ["MockProxyServer", "MockSSHServer", "MockServerConfig", "ProxyRequest"]
