from typing import Annotated, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    TypeAdapter,
)


class Location(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    lat: float = Field(ge=-90, le=90, validation_alias=AliasChoices("lat", "latitude"))
    lon: float = Field(ge=-180, le=180, validation_alias=AliasChoices("lon", "lng", "longitude"))


class SessionToken(BaseModel):
    """Decoded QR payload: where and when the presenter issued it."""

    model_config = ConfigDict(populate_by_name=True)

    location: Location
    issued_at: int = Field(
        validation_alias=AliasChoices("issuedAt", "issued_at", "timestamp"),
        serialization_alias="issuedAt",
    )
    nonce: str | None = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class TimetableEntry(BaseModel):
    id: str
    day: str
    start_time: str
    subject: str
    duration_minutes: int | None = None
    owner_id: str | None = None
    owner_name: str | None = None
    department: str


class AttendanceRecord(BaseModel):
    id: str | None = None
    attendee_id: str
    attendee_name: str
    subject: str
    date: str  # YYYY-MM-DD
    status: Literal["present", "absent"] = "present"


class VerificationResult(BaseModel):
    match: StrictBool
    confidence: float = Field(ge=0.0, le=1.0)


class Presenter(BaseModel):
    kind: Literal["presenter"] = "presenter"
    uid: str
    name: str
    email: str
    department: str
    subjects: list[str] = Field(default_factory=list)
    profile_picture: str | None = None

    def public(self) -> dict:
        return self.model_dump()


class Attendee(BaseModel):
    kind: Literal["attendee"] = "attendee"
    uid: str
    name: str
    email: str
    department: str
    roll_no: str
    subjects: list[str] = Field(default_factory=list)
    reference_face: str

    def public(self) -> dict:
        # reference images never leave the directory through the API
        return self.model_dump(exclude={"reference_face"})


Member = Annotated[Presenter | Attendee, Field(discriminator="kind")]
MEMBER_ADAPTER: TypeAdapter[Presenter | Attendee] = TypeAdapter(Member)
