from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, date
from enum import Enum

class JobKind(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    PRICE_UPDATE = "price_update"
    CLEANUP = "cleanup"
    PROXY_HEALTH = "proxy_health"

# Only one of these may be in flight at a time; maintenance kinds are never gated
GATED_JOB_KINDS = frozenset({JobKind.FULL, JobKind.INCREMENTAL, JobKind.PRICE_UPDATE})

class SessionStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"

class ListingType(str, Enum):
    RENTAL = "rental"
    PURCHASE = "purchase"

class ListingStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"

class ProxyProtocol(str, Enum):
    HTTP = "http"
    HTTPS = "https"
    SOCKS5 = "socks5"


class SessionCounts(BaseModel):
    found: int = Field(default=0, ge=0)
    new: int = Field(default=0, ge=0)
    updated: int = Field(default=0, ge=0)
    removed: int = Field(default=0, ge=0)

class ScrapeSession(BaseModel):
    """
    One execution of a job kind.
    Created with status=started when the job begins and finalized exactly once.
    """
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, validate_default=True)

    id: Optional[str] = Field(default=None, alias="_id")
    kind: JobKind
    status: SessionStatus = Field(default=SessionStatus.STARTED)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    counts: SessionCounts = Field(default_factory=SessionCounts)
    error: Optional[str] = None
    execution_time_ms: Optional[int] = Field(None, description="Wall time of the job body in milliseconds")

    @property
    def is_terminal(self) -> bool:
        return self.status != SessionStatus.STARTED


class ProxyRecord(BaseModel):
    """A proxy endpoint with its exponentially weighted reliability score (0-100)"""
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, validate_default=True)

    id: Optional[str] = Field(default=None, alias="_id")
    address: str
    port: int = Field(..., gt=0, lt=65536)
    protocol: ProxyProtocol = Field(default=ProxyProtocol.HTTP)
    username: Optional[str] = None
    password: Optional[str] = None
    country: Optional[str] = None
    active: bool = True
    success_rate: float = Field(default=100.0, ge=0.0, le=100.0)
    last_used: Optional[datetime] = None
    last_tested: Optional[datetime] = None
    response_time_ms: Optional[float] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def url(self) -> str:
        scheme = getattr(self.protocol, "value", self.protocol)
        if self.username and self.password:
            return f"{scheme}://{self.username}:{self.password}@{self.address}:{self.port}"
        return f"{scheme}://{self.address}:{self.port}"

    @property
    def label(self) -> str:
        """Loggable name, never includes credentials"""
        return f"{self.address}:{self.port}"


class ListingImage(BaseModel):
    url: str
    category: str = "general"
    caption: str = ""

class ListingRecord(BaseModel):
    """
    A property listing keyed by the source's stable identifier (MLS number analog).
    Everything beyond external_id, status and last_scraped_at is owned by the extractor.
    """
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, validate_default=True)

    id: Optional[str] = Field(default=None, alias="_id")
    external_id: str = Field(..., min_length=1, description="Stable identifier assigned by the listing source")
    listing_type: Optional[ListingType] = None
    status: ListingStatus = Field(default=ListingStatus.ACTIVE)
    url: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    price: Optional[float] = None
    images: List[ListingImage] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)

    last_scraped_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class UpsertResult(BaseModel):
    id: str
    was_new: bool


class RateLimitState(BaseModel):
    request_count_today: int = 0
    window_start: date = Field(default_factory=lambda: datetime.utcnow().date())
    last_request_time: Optional[datetime] = None


class CleanupReport(BaseModel):
    listings_deactivated: Optional[int] = None
    sessions_pruned: Optional[int] = None
    property_views_pruned: Optional[int] = None
    rate_limit_logs_pruned: Optional[int] = None
    errors: Dict[str, str] = Field(default_factory=dict, description="Sub-step name -> error message")

class HealthCheckReport(BaseModel):
    tested: int = 0
    healthy: int = 0
    unhealthy: int = 0
    deactivated: int = 0


# API request/response models
class ProxyCreateRequest(BaseModel):
    address: str = Field(..., min_length=1)
    port: int = Field(..., gt=0, lt=65536)
    protocol: ProxyProtocol = Field(default=ProxyProtocol.HTTP)
    username: Optional[str] = None
    password: Optional[str] = None
    country: Optional[str] = None

class TriggerResponse(BaseModel):
    success: bool = True
    kind: JobKind
    message: str
