"""
selfhost-migrate: move a Supabase Cloud database (schema, data and auth
users) onto a self-hosted Supabase deployment.
"""

__version__ = "0.1.0"
