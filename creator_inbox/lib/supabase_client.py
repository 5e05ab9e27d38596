"""Service-role Supabase client shared by the entry points."""

from __future__ import annotations

import os

from supabase import ClientOptions, create_client

_SB = None


def get_client(client=None):
    """Return a Supabase client, creating a singleton when none is provided."""
    global _SB
    if client is not None:
        return client
    if _SB is None:
        url = os.getenv("SUPABASE_URL")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        if not url or not key:
            raise RuntimeError("Supabase credentials missing in environment")
        _SB = create_client(
            url,
            key,
            options=ClientOptions(headers={"Authorization": f"Bearer {key}"}),
        )
    return _SB


__all__ = ["get_client"]
