"""
flowspine - flow run scheduling and resumable execution.

- flowspine.core: errors, logging, protocols, SQL dialects, settings
- flowspine.execution: scheduler, executor, batch processor, repositories
"""

__version__ = "0.1.0"
