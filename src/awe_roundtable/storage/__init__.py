from awe_roundtable.storage.artifacts import (
    FileTaskStore,
    InMemoryTaskStore,
    TaskHandle,
    TaskStore,
    new_task_id,
)

__all__ = ['FileTaskStore', 'InMemoryTaskStore', 'TaskHandle', 'TaskStore', 'new_task_id']
