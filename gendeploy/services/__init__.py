"""Services that talk to target hosts."""
