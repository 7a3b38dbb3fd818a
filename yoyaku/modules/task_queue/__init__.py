"""Background side-effect dispatch."""

from yoyaku.modules.task_queue.service import SideEffectDispatcher

__all__ = ["SideEffectDispatcher"]
