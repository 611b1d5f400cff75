from typing import Annotated, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter


class DateRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: str = Field(min_length=1)
    end: Optional[str] = None


class _KBItemBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    summary: str = ""
    specifics: list[str] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    aliases: list[str] = Field(default_factory=list)


class ProjectItem(_KBItemBase):
    kind: Literal["project"] = "project"
    title: str
    dates: Optional[DateRange] = None
    tech_stack: list[str] = Field(default_factory=list)
    architecture: Optional[str] = None
    links: dict[str, str] = Field(default_factory=dict)


class ExperienceItem(_KBItemBase):
    kind: Literal["experience"] = "experience"
    company: str
    role: str
    dates: Optional[DateRange] = None
    location: Optional[str] = None
    links: dict[str, str] = Field(default_factory=dict)


class ClassItem(_KBItemBase):
    kind: Literal["class"] = "class"
    title: str
    school: str = Field(default="", validation_alias=AliasChoices("school", "institution"))
    term: str = ""
    professor: Optional[str] = None


class BlogItem(_KBItemBase):
    kind: Literal["blog"] = "blog"
    title: str
    url: str = ""
    published_date: str = ""
    context: Optional[str] = None


class StoryItem(_KBItemBase):
    kind: Literal["story"] = "story"
    title: str
    text: str


class ValueItem(_KBItemBase):
    kind: Literal["value"] = "value"
    value: str
    why: str


class InterestItem(_KBItemBase):
    kind: Literal["interest"] = "interest"
    interest: str
    why: str


class EducationItem(_KBItemBase):
    kind: Literal["education"] = "education"
    school: str
    degree: str
    gpa: Optional[str] = None
    expected_grad: Optional[str] = None


class BioItem(_KBItemBase):
    kind: Literal["bio"] = "bio"
    name: str
    headline: str = ""
    bio: str = ""
    work_authorization: Optional[str] = None
    location: Optional[str] = None
    availability: Optional[str] = None
    language_proficiency: list[str] = Field(default_factory=list)


class SkillEvidence(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    id: str


class SkillItem(_KBItemBase):
    kind: Literal["skill"] = "skill"
    name: str
    type: str = "skill"
    description: Optional[str] = None
    evidence: list[SkillEvidence] = Field(default_factory=list)


KBItem = Annotated[
    Union[
        ProjectItem,
        ExperienceItem,
        ClassItem,
        BlogItem,
        StoryItem,
        ValueItem,
        InterestItem,
        EducationItem,
        BioItem,
        SkillItem,
    ],
    Field(discriminator="kind"),
]

KB_ITEM_ADAPTER: TypeAdapter = TypeAdapter(KBItem)

KB_KINDS: tuple[str, ...] = (
    "project",
    "experience",
    "class",
    "blog",
    "story",
    "value",
    "interest",
    "education",
    "bio",
    "skill",
)


class ContactBooking(BaseModel):
    enabled: bool = False
    link: Optional[str] = None


class ContactInfo(BaseModel):
    email: str
    linkedin: str
    github: Optional[str] = None
    booking: Optional[ContactBooking] = None
