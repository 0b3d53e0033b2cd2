"""
API 路由器
"""

from . import workflows, executions

__all__ = ["workflows", "executions"]
