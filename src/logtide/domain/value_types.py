from __future__ import annotations
from typing import NewType, Literal

Address = NewType("Address", str)   # 0x-prefixed, lowercase
Topic   = NewType("Topic", str)     # 66-char 0x-hash, lowercase
TxHash  = NewType("TxHash", str)    # 66-char 0x-hash, lowercase
Health  = Literal["healthy", "unhealthy", "unknown"]
ParamKind = Literal["uint", "int", "address"]
IngestionState = Literal["CONNECTING", "STREAMING", "AT_TIP", "FAILED"]
