from checkflow.workflow.tags import (
    AI_TODO,
    PROMPT_EXECUTION,
    DecodedTag,
    WorkflowTag,
    decode_import,
    decode_legacy,
    decode_tag,
    encode_tag,
)

__all__ = [
    "AI_TODO",
    "PROMPT_EXECUTION",
    "DecodedTag",
    "WorkflowTag",
    "decode_import",
    "decode_legacy",
    "decode_tag",
    "encode_tag",
]
