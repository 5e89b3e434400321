"""
Registro de clasificación de campos (listing local <-> tabla Airtable).

Aquí se declara, campo por campo:
- el nombre local y la columna Airtable
- la categoría (que fija la dirección de sync)
- el tipo de dato para coerción

El registro es inmutable: un job trabaja siempre con la misma instancia.
Los cambios de mapeo crean un registro nuevo (ver update_field_mapping).
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Optional

from listing_sync.domain.entities.field_spec import (
    DataType,
    FieldCategory,
    FieldSpec,
    MediaType,
    SyncDirection,
)


class FieldRegistry:
    """Mapa nombre de campo -> FieldSpec, con búsqueda por nombre local o remoto."""

    def __init__(self, specs: Iterable[FieldSpec]) -> None:
        by_name: dict[str, FieldSpec] = {}
        by_remote: dict[str, FieldSpec] = {}
        for spec in specs:
            if spec.name in by_name:
                raise ValueError(f"FieldSpec duplicado para '{spec.name}'")
            if spec.remote_field in by_remote:
                raise ValueError(f"Columna Airtable duplicada '{spec.remote_field}'")
            by_name[spec.name] = spec
            by_remote[spec.remote_field] = spec
        self._by_name = MappingProxyType(by_name)
        self._by_remote = MappingProxyType(by_remote)

    def __len__(self) -> int:
        return len(self._by_name)

    @property
    def specs(self) -> tuple[FieldSpec, ...]:
        return tuple(self._by_name.values())

    def classify(self, field_name: str) -> Optional[FieldSpec]:
        """FieldSpec por nombre local. None si el campo no está mapeado."""
        return self._by_name.get(field_name)

    def classify_remote(self, remote_field: str) -> Optional[FieldSpec]:
        """FieldSpec por columna Airtable. None si la columna no está mapeada."""
        return self._by_remote.get(remote_field)

    def direction_allowed(self, field_name: str, direction: SyncDirection) -> bool:
        spec = self.classify(field_name)
        return spec is not None and spec.allows(direction)

    def by_category(self, category: FieldCategory) -> list[FieldSpec]:
        return [s for s in self._by_name.values() if s.category is category]

    def media_specs(self, media_types: Optional[Iterable[str]] = None) -> list[FieldSpec]:
        wanted = {MediaType(m) for m in media_types} if media_types else None
        return [
            s for s in self.by_category(FieldCategory.MEDIA_SYNC)
            if wanted is None or s.media_type in wanted
        ]


def _manual(name: str, remote: str, data_type: DataType = DataType.STRING, allowed: tuple[str, ...] = ()) -> FieldSpec:
    return FieldSpec(name=name, remote_field=remote, category=FieldCategory.MANUAL_SYNC, data_type=data_type, allowed_values=allowed)


def _local(name: str, remote: str, data_type: DataType = DataType.STRING) -> FieldSpec:
    return FieldSpec(name=name, remote_field=remote, category=FieldCategory.CALCULATED_LOCAL, data_type=data_type)


def _media(name: str, remote: str, data_type: DataType, max_files: int, media_type: MediaType = MediaType.IMAGES) -> FieldSpec:
    return FieldSpec(
        name=name,
        remote_field=remote,
        category=FieldCategory.MEDIA_SYNC,
        data_type=data_type,
        media_type=media_type,
        max_files=max_files,
    )


N = DataType.NUMBER
D = DataType.DATE
S = DataType.SELECT
B = DataType.BOOLEAN
U = DataType.URL


DEFAULT_LISTING_FIELDS: tuple[FieldSpec, ...] = (
    # Listing
    _manual("mls_number", "MLS Number"),
    _manual("list_date", "List Date", D),
    _manual("listing_status", "Listing Status", S, ("Active", "Pending", "Sold", "Expired", "Withdrawn")),
    _manual("expiration_date", "Expiration Date", D),
    _manual("price", "Current Price", N),
    _local("original_price", "Original Price", N),
    _local("price_per_sqft", "Price Per SqFt", N),
    _local("days_on_market", "Days on Market", N),
    _local("status_change_date", "Status Change Date", D),
    _local("price_change_count", "Price Changes", N),
    _manual("listing_agreement_type", "Agreement Type", S, ("Exclusive Right", "Exclusive Agency", "Open Listing")),
    _manual("listing_service_level", "Service Level", S, ("Full Service", "Limited Service", "Flat Fee")),
    # Propiedad
    _manual(
        "property_type",
        "Property Type",
        S,
        ("Single Family Home", "Townhouse", "Condo", "Multi-Family", "Land", "Commercial"),
    ),
    _manual("property_style", "Property Style"),
    _manual("year_built", "Year Built", N),
    _manual("property_condition", "Property Condition", S, ("Excellent", "Good", "Fair", "Poor")),
    _manual("square_footage", "Square Footage", N),
    _manual("living_area", "Living Area", N),
    _manual("lot_size", "Lot Size (Acres)", N),
    _local("lot_sqft", "Lot Size (SqFt)", N),
    _manual("sqft_source", "SqFt Source", S, ("Tax Assessor", "Builder", "Owner", "Appraiser", "Public Records")),
    _manual("stories", "Stories", N),
    _manual("bedrooms", "Bedrooms", N),
    _manual("bathrooms_full", "Full Bathrooms", N),
    _manual("bathrooms_half", "Half Bathrooms", N),
    _local("bathrooms_total", "Total Bathrooms", N),
    _manual("rooms_total", "Total Rooms", N),
    _manual("parking_spaces", "Parking Spaces", N),
    _manual("garage_spaces", "Garage Spaces", N),
    _manual("basement", "Basement", S, ("None", "Partial", "Full", "Finished")),
    _manual("fireplace_count", "Fireplaces", N),
    _manual("pool", "Has Pool", B),
    _manual("hot_tub_spa", "Hot Tub/Spa", B),
    _manual("waterfront", "Waterfront", B),
    # Dirección
    _manual("street_address", "Street Address"),
    _manual("unit_number", "Unit Number"),
    _manual("city", "City"),
    _manual("state", "State", S, ("DE", "MD", "PA", "NJ", "VA", "DC")),
    _manual("zip_code", "ZIP Code"),
    _local("county", "County"),
    _local("street_number", "Street Number"),
    _local("street_dir_prefix", "Street Direction Prefix"),
    _local("street_name", "Street Name"),
    _local("street_suffix", "Street Suffix"),
    _local("street_dir_suffix", "Street Direction Suffix"),
    _manual("parcel_number", "Parcel Number"),
    # Geografía
    _local("latitude", "Latitude", N),
    _local("longitude", "Longitude", N),
    _local("walkability_score", "Walkability Score", N),
    _local("geocoding_accuracy", "Geocoding Accuracy"),
    _local("geocoding_source", "Geocoding Source"),
    # Media
    _media("featured_photo", "Featured Photo", DataType.ATTACHMENT, 1),
    _media("listing_photos", "Listing Photos", DataType.ATTACHMENT_MULTIPLE, 50),
    _media("floor_plan_images", "Floor Plans", DataType.ATTACHMENT_MULTIPLE, 10),
    _media("listing_documents", "Documents", DataType.ATTACHMENT_MULTIPLE, 20, MediaType.DOCUMENTS),
    _manual("virtual_tour_url", "Virtual Tour URL", U),
    _manual("video_tour_url", "Video Tour URL", U),
    _local("photo_count", "Photo Count", N),
    # Relaciones y zona
    _manual("neighborhood", "Neighborhood"),
    _manual("school_district", "School District"),
    _manual("mls_area_code", "MLS Area Code"),
    _manual("zoning", "Zoning"),
    _manual("flood_zone", "Flood Zone"),
    _manual("hoa_name", "HOA Name"),
    _manual(
        "address_visibility",
        "Address Visibility",
        S,
        ("full", "street_only", "neighborhood", "city_only", "hidden"),
    ),
    # Columnas que calcula Airtable
    FieldSpec(name="remote_created_at", remote_field="Created", category=FieldCategory.CALCULATED_REMOTE, data_type=D),
    FieldSpec(name="remote_last_modified", remote_field="Last Modified", category=FieldCategory.READONLY, data_type=D),
)


def default_registry() -> FieldRegistry:
    return FieldRegistry(DEFAULT_LISTING_FIELDS)
