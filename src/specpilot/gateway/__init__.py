from specpilot.gateway.client import GatewayClient, GatewayCommandRunner
from specpilot.gateway.daemon import gateway_status, start_daemon, stop_daemon
from specpilot.gateway.server import GatewayServer, create_app, read_info

__all__ = [
    "GatewayClient",
    "GatewayCommandRunner",
    "GatewayServer",
    "create_app",
    "gateway_status",
    "read_info",
    "start_daemon",
    "stop_daemon",
]
