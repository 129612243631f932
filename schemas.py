"""
Database Schemas for the academy API

Each Pydantic model describes the documents written to one MongoDB
collection. The store enforces no schema; these models only shape what this
service writes.

- User -> "ams-users"
- Batch -> "ams-batches"
- Attendancerecord -> "ams-attendance"
- Financialrecord -> "ams-finance"
"""
from typing import List, Literal, Optional
from pydantic import BaseModel, EmailStr, Field

Role = Literal["owner", "admin", "coordinator", "coach", "player"]


class User(BaseModel):
    username: str
    name: str
    email: EmailStr
    password_hash: str
    role: Role = "player"
    academyId: str
    status: Literal["active", "inactive"] = "active"


class Batch(BaseModel):
    name: str
    academyId: str
    coachIds: List[str] = Field(default_factory=list)
    coachNames: List[str] = Field(default_factory=list)
    players: List[str] = Field(default_factory=list, description="Player ids")
    createdBy: str


class Attendancerecord(BaseModel):
    academyId: str
    userId: str
    date: str = Field(..., description="YYYY-MM-DD")
    status: Literal["present", "absent", "late"]
    type: Literal["players", "coaches"]
    markedBy: str


class Financialrecord(BaseModel):
    transactionId: str
    academyId: str
    type: Literal["income", "expense"]
    amount: float
    quantity: int = 1
    description: Optional[str] = None
    date: str
    documentId: Optional[str] = None
    status: Literal["active", "deleted"] = "active"
