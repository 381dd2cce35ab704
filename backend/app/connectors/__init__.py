"""Upstream analytics connectors package."""
from app.connectors.factory import get_connector, build_connectors, CONNECTOR_REGISTRY

__all__ = ["get_connector", "build_connectors", "CONNECTOR_REGISTRY"]
