"""结构化运行事件（Observer 模式）

调度器在关键节点发出 RunEvent，EventBus 负责:
  1. 通过 buildorch.events logger 记录（JSON 日志格式下附带完整 payload）
  2. 分发给通过 subscribe() 注册的钩子（通知、指标、看板等外部投递）

钩子执行失败只记录日志，不影响构建。

用法:
    bus = EventBus()
    bus.subscribe(my_notifier)
    Scheduler(max_workers=4, events=bus).run(graph, runner)
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)
event_logger = logging.getLogger("buildorch.events")

RUN_STARTED = "run_started"
NODE_STARTED = "node_started"
NODE_FINISHED = "node_finished"
NODE_SKIPPED = "node_skipped"
RUN_CANCELLED = "run_cancelled"
RUN_FINISHED = "run_finished"


@dataclass(frozen=True)
class RunEvent:
    kind: str
    service: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "service": self.service,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


class EventHook(ABC):
    """事件钩子基类，实现 on_event 即可接入"""

    @abstractmethod
    def on_event(self, event: RunEvent) -> None:
        """接收一条运行事件"""


class EventBus:
    """线程安全的事件分发器"""

    def __init__(self) -> None:
        self._hooks: list[EventHook] = []
        self._lock = threading.Lock()

    def subscribe(self, hook: EventHook) -> None:
        with self._lock:
            self._hooks.append(hook)

    def emit(self, kind: str, service: str = "", **payload: Any) -> RunEvent:
        event = RunEvent(kind=kind, service=service, payload=payload)
        label = f"{kind}: {service}" if service else kind
        event_logger.info(label, extra={"event": event.to_dict()})
        with self._lock:
            hooks = list(self._hooks)
        for hook in hooks:
            try:
                hook.on_event(event)
            except Exception:  # noqa: BLE001
                logger.exception("事件钩子执行失败: %s", type(hook).__name__)
        return event
