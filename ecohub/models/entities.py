"""Typed candidate entities extracted from source payloads.

``CandidateEntity`` is a discriminated union keyed on ``kind`` so that
callers can match exhaustively on :class:`Startup`, :class:`Opportunity`
and :class:`Event` instead of probing for fields at runtime.
"""

from __future__ import annotations

import datetime as dt
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _CandidateBase(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    description: str = Field(min_length=1)
    sector: str | None = None
    location: str | None = None
    source: str
    confidence: float = Field(ge=0.0, le=1.0)


class Startup(_CandidateBase):
    kind: Literal["startup"] = "startup"

    name: str = Field(min_length=1)
    website: str | None = None
    stage: str | None = None
    funding_amount: str | None = None
    founded_year: int | None = None

    @property
    def display_name(self) -> str:
        return self.name

    @property
    def url(self) -> str | None:
        return self.website


class Opportunity(_CandidateBase):
    kind: Literal["opportunity"] = "opportunity"

    title: str = Field(min_length=1)
    provider: str | None = None
    opportunity_type: str = "grant"
    deadline: dt.date | None = None
    amount: str | None = None
    link: str | None = None

    @property
    def display_name(self) -> str:
        return self.title

    @property
    def url(self) -> str | None:
        return self.link


class Event(_CandidateBase):
    kind: Literal["event"] = "event"

    name: str = Field(min_length=1)
    date: dt.date | None = None
    venue: str | None = None
    link: str | None = None

    @property
    def display_name(self) -> str:
        return self.name

    @property
    def url(self) -> str | None:
        return self.link


CandidateEntity = Annotated[
    Union[Startup, Opportunity, Event],
    Field(discriminator="kind"),
]

candidate_adapter: TypeAdapter[CandidateEntity] = TypeAdapter(CandidateEntity)
