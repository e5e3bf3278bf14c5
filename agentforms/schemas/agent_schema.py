"""Agent and form schema data models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class FieldType(str, Enum):
    TEXT = "text"
    EMAIL = "email"
    NUMBER = "number"
    SELECT = "select"
    DATE = "date"


class PersonaTone(str, Enum):
    FRIENDLY = "friendly"
    PROFESSIONAL = "professional"
    CASUAL = "casual"
    FORMAL = "formal"


class FieldValidation(BaseModel):
    """Field-level constraints set in the schema builder."""

    model_config = ConfigDict(frozen=True)

    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None


class SchemaField(BaseModel):
    """One unit of data the agent aims to collect from a visitor."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    type: FieldType = FieldType.TEXT
    required: bool = False
    options: Optional[list[str]] = None
    order: int = 0
    placeholder: Optional[str] = None
    help_text: Optional[str] = None
    validation: Optional[FieldValidation] = None


class AgentSchema(BaseModel):
    """Ordered field definitions. Frozen: a running session never sees edits."""

    model_config = ConfigDict(frozen=True)

    fields: list[SchemaField] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_ids(self) -> "AgentSchema":
        seen: set[str] = set()
        for schema_field in self.fields:
            if schema_field.id in seen:
                raise ValueError(f"Duplicate field id: {schema_field.id}")
            seen.add(schema_field.id)
        return self

    @property
    def field_ids(self) -> set[str]:
        return {f.id for f in self.fields}

    def get_field(self, field_id: str) -> Optional[SchemaField]:
        for schema_field in self.fields:
            if schema_field.id == field_id:
                return schema_field
        return None

    def required_fields(self) -> list[SchemaField]:
        """Required fields in display order; list position breaks ties."""
        return sorted((f for f in self.fields if f.required), key=lambda f: f.order)


class Persona(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = "Assistant"
    description: str = ""
    tone: PersonaTone = PersonaTone.FRIENDLY


class Agent(BaseModel):
    """A published conversational form: schema plus the voice that collects it."""

    id: str
    name: str
    form_schema: AgentSchema
    persona: Persona = Field(default_factory=Persona)
    knowledge: Optional[str] = None
    welcome_message: Optional[str] = None
