from mtnorm.normalize.mtlognorm import mtlog_normalize

__all__ = ["mtlog_normalize"]
