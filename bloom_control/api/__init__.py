"""
HTTP routers: dashboard commands, instance webhooks and health.
"""
