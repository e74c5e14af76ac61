"""Services — async orchestration: streaming adapter, tool execution, turn loop, compaction."""
