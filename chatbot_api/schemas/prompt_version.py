from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

class PromptVersionCreate(BaseModel):
    system_prompt: str = Field(min_length=1, max_length=50_000)
    version_name: Optional[str] = Field(default=None, max_length=120)
    personality_traits: List[str] = Field(default_factory=list)
    behavior_rules: List[str] = Field(default_factory=list)
    compliance_rules: List[str] = Field(default_factory=list)
    response_guidelines: List[str] = Field(default_factory=list)

class PromptVersionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    avatar_id: str
    version_number: int
    version_name: Optional[str] = None
    system_prompt: str
    personality_traits: List[str] = Field(default_factory=list)
    behavior_rules: List[str] = Field(default_factory=list)
    compliance_rules: List[str] = Field(default_factory=list)
    response_guidelines: List[str] = Field(default_factory=list)
    is_active: bool
    activated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
