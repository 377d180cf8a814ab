"""Application services: domain logic behind the HTTP and WebSocket layers."""
