from unification.layer import HostFramework, UnificationLayer


__all__ = ["HostFramework", "UnificationLayer"]
