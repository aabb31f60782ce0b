"""Platform services: errors, secrets and tenant context."""
