"""
Traducción local <-> Airtable y resolución de conflictos por campo.

Reglas de merge:
- manual_sync: last-writer-wins con timestamp por campo (o del registro si
  no hay); en empate gana el lado que inició la operación.
- calculated_local: solo fluye local -> remoto; el valor remoto se descarta.
- calculated_remote: solo fluye remoto -> local.
- readonly: nunca se escribe.
- media_sync: se registra la referencia; los bytes los mueve MediaSynchronizer.
- campos sin FieldSpec: se descartan con warning.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Callable, Iterable, Optional

from loguru import logger

from listing_sync.domain.entities import (
    DataType,
    FieldSpec,
    LocalRecord,
    MergeResult,
    Side,
    SyncDirection,
)
from listing_sync.domain.entities.field_spec import (
    VARIANT_BY_CATEGORY,
    ClassifiedValue,
    LocalOwnedValue,
    ManualValue,
    MediaValue,
    ReadonlyValue,
    RemoteOwnedValue,
    UnmappedValue,
    classify_value,
)
from listing_sync.infrastructure.external.airtable_sync.field_registry import FieldRegistry
from listing_sync.infrastructure.external.airtable_sync.types import AirtableRecord

_TRUE_STRINGS = {"1", "true", "yes", "y", "si", "sí", "on"}
_FALSE_STRINGS = {"0", "false", "no", "n", "off", ""}


class InvalidValue(ValueError):
    """El valor no es coercible al data_type del campo."""


def coerce_value(spec: FieldSpec, value: Any) -> Any:
    """
    Normaliza un valor al data_type del spec (en ambos sentidos).

    Raises:
        InvalidValue: si el valor no es representable
    """
    if value is None:
        return None
    dt = spec.data_type

    if dt is DataType.NUMBER:
        if isinstance(value, bool):
            raise InvalidValue(f"{spec.name}: booleano no es numérico")
        if isinstance(value, (int, float)):
            return value
        text = str(value).strip().replace(",", "").replace("$", "")
        if text == "":
            return None
        try:
            number = float(text)
        except ValueError as e:
            raise InvalidValue(f"{spec.name}: '{value}' no es numérico") from e
        return int(number) if number.is_integer() else number

    if dt is DataType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return bool(value)
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise InvalidValue(f"{spec.name}: '{value}' no es booleano")

    if dt is DataType.DATE:
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return str(value) or None

    if dt is DataType.SELECT:
        text = str(value).strip()
        if text == "":
            return None
        if spec.allowed_values and text not in spec.allowed_values:
            raise InvalidValue(f"{spec.name}: '{text}' no está en {list(spec.allowed_values)}")
        return text

    if dt in (DataType.ATTACHMENT, DataType.ATTACHMENT_MULTIPLE):
        return value

    # string / url
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    text = str(value)
    return text if text != "" else None


def format_value_for_remote(spec: FieldSpec, value: Any) -> Any:
    """Valor listo para el payload de Airtable."""
    coerced = coerce_value(spec, value)
    if coerced is None:
        return None
    if spec.data_type is DataType.NUMBER:
        return float(coerced)
    if spec.data_type is DataType.BOOLEAN:
        return bool(coerced)
    if spec.data_type in (DataType.ATTACHMENT, DataType.ATTACHMENT_MULTIPLE):
        return coerced
    return str(coerced)


def values_equal(a: Any, b: Any) -> bool:
    if a in ("", None) and b in ("", None):
        return True
    if isinstance(a, (int, float)) and isinstance(b, (int, float)) and not isinstance(a, bool) and not isinstance(b, bool):
        return float(a) == float(b)
    return a == b


Handler = Callable[..., None]


class RecordMapper:
    """
    Convierte y mezcla registros usando un FieldRegistry inmutable.

    Los handlers se despachan por variante de ClassifiedValue; el constructor
    verifica que no falte ninguna.
    """

    def __init__(self, registry: FieldRegistry, *, ignored_remote_fields: Iterable[str] = ()) -> None:
        self._registry = registry
        self._ignored_remote = set(ignored_remote_fields)
        self._to_local: dict[type, Handler] = {
            ManualValue: self._manual_to_local,
            LocalOwnedValue: self._discard,
            RemoteOwnedValue: self._owned_to_local,
            MediaValue: self._media_ref,
            ReadonlyValue: self._discard,
            UnmappedValue: self._unmapped,
        }
        self._to_remote: dict[type, Handler] = {
            ManualValue: self._manual_to_remote,
            LocalOwnedValue: self._owned_to_remote,
            RemoteOwnedValue: self._discard,
            MediaValue: self._media_ref,
            ReadonlyValue: self._discard,
            UnmappedValue: self._unmapped,
        }
        expected = set(VARIANT_BY_CATEGORY.values()) | {UnmappedValue}
        for table in (self._to_local, self._to_remote):
            missing = expected - set(table)
            if missing:
                raise TypeError(f"Variantes sin handler: {sorted(t.__name__ for t in missing)}")

    @property
    def registry(self) -> FieldRegistry:
        return self._registry

    def classify_remote_payload(self, fields: dict[str, Any]) -> list[ClassifiedValue]:
        return [
            classify_value(self._registry.classify_remote(name), name, value)
            for name, value in fields.items()
            if name not in self._ignored_remote
        ]

    def classify_local_payload(self, fields: dict[str, Any]) -> list[ClassifiedValue]:
        return [classify_value(self._registry.classify(name), name, value) for name, value in fields.items()]

    # ------------------------------------------------------------------
    # remoto -> local
    # ------------------------------------------------------------------

    def merge_remote_into_local(
        self,
        local: Optional[LocalRecord],
        remote: AirtableRecord,
        *,
        initiator: Side = Side.REMOTE,
    ) -> MergeResult:
        """
        Calcula qué campos del registro remoto deben escribirse en el listing local.

        Args:
            local: snapshot local (None si el listing aún no existe)
            remote: registro Airtable
            initiator: lado que originó la operación (desempate LWW)
        """
        result = MergeResult(target_side=Side.LOCAL)
        for classified in self.classify_remote_payload(remote.fields):
            if not isinstance(classified, UnmappedValue) and not self._registry.direction_allowed(
                classified.spec.name, SyncDirection.REMOTE_TO_LOCAL
            ):
                result.skip(classified.spec.name)
                continue
            handler = self._to_local[type(classified)]
            handler(classified, result, local=local, remote=remote, initiator=initiator)
        return result

    def _manual_to_local(self, cv: ManualValue, result: MergeResult, *, local, remote, initiator) -> None:
        spec = cv.spec
        incoming = self._coerce_or_skip(spec, cv.value, result)
        if incoming is _INVALID:
            return
        current = self._local_value(spec, local)
        if values_equal(current, incoming):
            return
        if local is None:
            result.write(spec.name, spec.name, incoming)
            return

        has_conflict = current not in (None, "")
        local_ts = local.field_timestamp(spec.name)
        remote_ts = remote.last_modified
        if remote_ts > local_ts or (remote_ts == local_ts and initiator is Side.REMOTE):
            result.write(spec.name, spec.name, incoming)
        else:
            result.skip(spec.name)
        if has_conflict:
            result.conflicts_resolved += 1

    def _owned_to_local(self, cv: RemoteOwnedValue, result: MergeResult, *, local, remote, initiator) -> None:
        spec = cv.spec
        incoming = self._coerce_or_skip(spec, cv.value, result)
        if incoming is _INVALID:
            return
        current = self._local_value(spec, local)
        if not values_equal(current, incoming):
            result.write(spec.name, spec.name, incoming)

    # ------------------------------------------------------------------
    # local -> remoto
    # ------------------------------------------------------------------

    def merge_local_into_remote(
        self,
        local: LocalRecord,
        remote: Optional[AirtableRecord],
        *,
        initiator: Side = Side.LOCAL,
    ) -> MergeResult:
        """
        Calcula el payload Airtable (values) para reflejar el listing local.

        Args:
            local: snapshot local
            remote: estado actual del registro en Airtable (None si no existe)
            initiator: lado que originó la operación (desempate LWW)
        """
        result = MergeResult(target_side=Side.REMOTE)
        for classified in self.classify_local_payload(local.fields):
            if not isinstance(classified, UnmappedValue) and not self._registry.direction_allowed(
                classified.spec.name, SyncDirection.LOCAL_TO_REMOTE
            ):
                result.skip(classified.spec.name)
                continue
            handler = self._to_remote[type(classified)]
            handler(classified, result, local=local, remote=remote, initiator=initiator)
        return result

    def _manual_to_remote(self, cv: ManualValue, result: MergeResult, *, local, remote, initiator) -> None:
        spec = cv.spec
        outgoing = self._format_or_skip(spec, cv.value, result)
        if outgoing is _INVALID:
            return
        current = self._remote_value(spec, remote)
        if values_equal(current, outgoing):
            return
        if remote is None:
            result.write(spec.name, spec.remote_field, outgoing)
            return

        has_conflict = current not in (None, "")
        local_ts = local.field_timestamp(spec.name)
        remote_ts = remote.last_modified
        if local_ts > remote_ts or (local_ts == remote_ts and initiator is Side.LOCAL):
            result.write(spec.name, spec.remote_field, outgoing)
        else:
            result.skip(spec.name)
        if has_conflict:
            result.conflicts_resolved += 1

    def _owned_to_remote(self, cv: LocalOwnedValue, result: MergeResult, *, local, remote, initiator) -> None:
        spec = cv.spec
        outgoing = self._format_or_skip(spec, cv.value, result)
        if outgoing is _INVALID:
            return
        if not values_equal(self._remote_value(spec, remote), outgoing):
            result.write(spec.name, spec.remote_field, outgoing)

    # ------------------------------------------------------------------
    # Comunes
    # ------------------------------------------------------------------

    def _media_ref(self, cv: MediaValue, result: MergeResult, **_: Any) -> None:
        result.media_fields[cv.spec.name] = cv.value

    def _discard(self, cv: ClassifiedValue, result: MergeResult, **_: Any) -> None:
        result.skip(cv.spec.name)

    def _unmapped(self, cv: UnmappedValue, result: MergeResult, **_: Any) -> None:
        logger.warning(f"Campo '{cv.field_name}' sin FieldSpec: se descarta")
        result.unmapped.append(cv.field_name)
        result.skip(cv.field_name)

    def _local_value(self, spec: FieldSpec, local: Optional[LocalRecord]) -> Any:
        if local is None:
            return None
        try:
            return coerce_value(spec, local.fields.get(spec.name))
        except InvalidValue:
            return local.fields.get(spec.name)

    def _remote_value(self, spec: FieldSpec, remote: Optional[AirtableRecord]) -> Any:
        if remote is None:
            return None
        try:
            return format_value_for_remote(spec, remote.fields.get(spec.remote_field))
        except InvalidValue:
            return remote.fields.get(spec.remote_field)

    @staticmethod
    def _coerce_or_skip(spec: FieldSpec, value: Any, result: MergeResult) -> Any:
        try:
            return coerce_value(spec, value)
        except InvalidValue as e:
            logger.warning(f"Valor descartado: {e}")
            result.skip(spec.name)
            return _INVALID

    @staticmethod
    def _format_or_skip(spec: FieldSpec, value: Any, result: MergeResult) -> Any:
        try:
            return format_value_for_remote(spec, value)
        except InvalidValue as e:
            logger.warning(f"Valor descartado: {e}")
            result.skip(spec.name)
            return _INVALID


_INVALID = object()
