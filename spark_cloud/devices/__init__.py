"""Device management and the owned-devices snapshot."""
