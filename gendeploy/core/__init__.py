"""Deployment engine: bundle loading, generations, apply, health, rollback."""
