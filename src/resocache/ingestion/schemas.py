from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


ADDRESS_FIELDS = ("UnparsedAddress", "StreetNumber", "StreetName", "UnitNumber", "PostalCode")
# Exact coordinates pinpoint the address, so they are withheld together with it.
SUPPRESSED_LOCATION_FIELDS = ADDRESS_FIELDS + ("Latitude", "Longitude")


class ListingRecord(BaseModel):
    """Canonical cached listing. The shape is closed: unknown fields are dropped."""

    model_config = ConfigDict(extra="ignore")

    ListingKey: str
    CityNorm: str = ""
    ModEpoch: int

    StandardStatus: Optional[str] = None
    MlsStatus: Optional[str] = None
    PropertyType: Optional[str] = None
    PropertySubType: Optional[str] = None
    ListPrice: Optional[float] = None
    OriginalListPrice: Optional[float] = None
    ClosePrice: Optional[float] = None
    BedroomsTotal: Optional[int] = None
    BathroomsTotalInteger: Optional[int] = None
    LivingArea: Optional[float] = None
    LotSizeAcres: Optional[float] = None
    YearBuilt: Optional[int] = None

    UnparsedAddress: Optional[str] = None
    StreetNumber: Optional[str] = None
    StreetName: Optional[str] = None
    UnitNumber: Optional[str] = None
    PostalCode: Optional[str] = None
    City: Optional[str] = None
    CountyOrParish: Optional[str] = None
    StateOrProvince: Optional[str] = None
    Latitude: Optional[float] = None
    Longitude: Optional[float] = None
    InternetAddressDisplayYN: bool = True

    PublicRemarks: Optional[str] = None
    SpecialListingConditions: list[str] = Field(default_factory=list)
    ListingContractDate: Optional[str] = None
    ListAgentFullName: Optional[str] = None
    ListOfficeName: Optional[str] = None

    PhotosCount: int = 0
    PrimaryPhotoUrl: Optional[str] = None
    PhotoUrls: list[str] = Field(default_factory=list)

    LastSeenAt: Optional[int] = None
    PhotosChangeTimestamp: Optional[int] = None
    ImagesUpdatedAt: Optional[int] = None
    CdnPrimary400: Optional[str] = None
    Gallery400Count: Optional[int] = None


class ListingPage(BaseModel):
    items: list[ListingRecord] = Field(default_factory=list)
    next_cursor: Optional[str] = None
