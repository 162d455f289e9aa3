from __future__ import annotations

from abc import ABC, abstractmethod

from reclaimer.core.dto import InstructionDescriptor
from reclaimer.core.enums import OperationKind
from reclaimer.core.models import BatchOperation


class InstructionBuilderPort(ABC):
    @abstractmethod
    def build(self, kind: OperationKind, operation: BatchOperation) -> InstructionDescriptor:
        raise NotImplementedError
