"""
Database Schemas for ContractIQ

Each Pydantic model represents a MongoDB collection (lowercased class name).
Fields are snake_case in Python and stored/serialized with camelCase aliases.
"""
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List
from datetime import datetime


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class User(CamelModel):
    google_id: str = Field(..., description="Subject id from Google sign-in")
    email: str
    display_name: str = ""
    profile_picture: Optional[str] = None
    is_premium: bool = Field(False, description="Set by the payment webhook")
    created_at: datetime
    last_login_at: Optional[datetime] = None


class Session(CamelModel):
    user_id: str
    token: str
    expires_at: datetime


class Risk(CamelModel):
    risk: str
    explanation: str = ""
    severity: str = Field("medium", description="low | medium | high")


class Opportunity(CamelModel):
    opportunity: str
    explanation: str = ""
    impact: str = Field("medium", description="low | medium | high")


class AnalysisResult(CamelModel):
    """Shape of the JSON object the AI model is asked to return."""

    overall_score: int = Field(0, ge=0, le=100)
    risks: List[Risk] = []
    opportunities: List[Opportunity] = []
    summary: str = ""
    key_clauses: List[str] = []
    recommendations: List[str] = []
    negotiation_points: List[str] = []
    contract_duration: str = ""
    termination_conditions: str = ""
    legal_compliance: str = ""
    compensation_structure: str = ""
    performance_metrics: List[str] = []
    intellectual_property_clauses: str = ""

    @field_validator("overall_score", mode="before")
    @classmethod
    def _round_score(cls, v):
        if v is None:
            return 0
        return int(round(float(v)))


class ContractAnalysis(AnalysisResult):
    user_id: str
    contract_text: str = Field(..., min_length=1)
    contract_type: str = Field(..., min_length=1)
    ai_model: str
    language: str = "en"
    created_at: datetime

    @field_validator("contract_text", "contract_type")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class ChatMessage(CamelModel):
    user_id: str
    contract_id: str
    role: str = Field(..., description="user | assistant")
    content: str
    created_at: datetime


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
