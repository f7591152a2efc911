"""
FastAPI dependencies.
"""

from fastapi.requests import HTTPConnection

from relaynode.services.node import NodeService


def get_node(connection: HTTPConnection) -> NodeService:
    """Returns the node service the app was created with."""
    node: NodeService = connection.app.state.node
    return node
