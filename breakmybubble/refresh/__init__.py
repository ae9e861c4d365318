from .scheduler import BackgroundRefreshScheduler, RefreshConfig, RefreshTask

__all__ = ["BackgroundRefreshScheduler", "RefreshConfig", "RefreshTask"]
