"""Disk topology document: parsing, validation and replacement reconciliation.

The document is YAML with a ``global`` mapping of defaults and an ordered ``disk``
list. Every key is declared in a typed registry so that values are validated eagerly
instead of being coerced wherever they are read::

    global:
      format_percent: 95
      container_image: opencurvedocker/curvebs:v1.2
      host: [h1, h2, h3]
    disk:
      - device: /dev/sdb
        mount: /data/chunkserver0
      - device: /dev/sdc
        mount: /data/chunkserver1
        hosts_exclude: [h3]
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

import yaml

from chunkswap.errors import ConfigurationError
from chunkswap.logger import get_logger

_logger = get_logger("services.topology")

DISK_URI_PROTO_FS_UUID = "fs:uuid"
_DISK_URI_SEPARATOR = "//"

KEY_DEVICE = "device"
KEY_MOUNT = "mount"
KEY_FORMAT_PERCENT = "format_percent"
KEY_CONTAINER_IMAGE = "container_image"
KEY_SERVICE_MOUNT_DEVICE = "service_mount_device"
KEY_HOST = "host"
KEY_HOSTS_ONLY = "hosts_only"
KEY_HOSTS_EXCLUDE = "hosts_exclude"

DEFAULT_FORMAT_PERCENT = 90


@dataclass(frozen=True)
class DiskURI:
    """Physical-disk identity, rendered as ``<scheme>//<identifier>``."""

    scheme: str
    identifier: str

    @classmethod
    def fs_uuid(cls, uuid: str) -> "DiskURI":
        return cls(DISK_URI_PROTO_FS_UUID, uuid.strip())

    @classmethod
    def parse(cls, raw: str) -> Optional["DiskURI"]:
        value = (raw or "").strip()
        if not value:
            return None
        scheme, sep, identifier = value.partition(_DISK_URI_SEPARATOR)
        if not sep or not scheme or not identifier:
            raise ConfigurationError("invalid_disk_uri", f"disk URI {value!r} is not <proto>//<id>")
        return cls(scheme, identifier)

    @property
    def disk_id(self) -> str:
        if self.scheme == DISK_URI_PROTO_FS_UUID:
            return self.identifier
        return ""

    def __str__(self) -> str:
        return f"{self.scheme}{_DISK_URI_SEPARATOR}{self.identifier}"


def disk_id_from_uri(raw: str) -> str:
    uri = DiskURI.parse(raw)
    return uri.disk_id if uri is not None else ""


# --- typed item registry ---------------------------------------------------


def _as_str(key: str, value: Any) -> str:
    if isinstance(value, bool) or isinstance(value, (list, dict)):
        raise ValueError(f"{key} must be a string")
    return str(value).strip()


def _as_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{key} must be an integer")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text.lstrip("-").isdigit():
        raise ValueError(f"{key} must be an integer")
    return int(text)


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"true", "yes", "1"}:
        return True
    if text in {"false", "no", "0"}:
        return False
    raise ValueError(f"{key} must be a boolean")


def _as_list(key: str, value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if not isinstance(value, list):
        raise ValueError(f"{key} must be a list of host names")
    items: list[str] = []
    for item in value:
        if isinstance(item, (list, dict)) or item is None:
            raise ValueError(f"{key} must be a list of host names")
        items.append(str(item).strip())
    return [item for item in items if item]


@dataclass(frozen=True)
class _Item:
    key: str
    build: Callable[[str, Any], Any]
    default: Any = None


_ITEMS: tuple[_Item, ...] = (
    _Item(KEY_DEVICE, _as_str, ""),
    _Item(KEY_MOUNT, _as_str, ""),
    _Item(KEY_FORMAT_PERCENT, _as_int, DEFAULT_FORMAT_PERCENT),
    _Item(KEY_CONTAINER_IMAGE, _as_str, ""),
    _Item(KEY_SERVICE_MOUNT_DEVICE, _as_bool, False),
    _Item(KEY_HOST, _as_list, ()),
    _Item(KEY_HOSTS_ONLY, _as_list, ()),
    _Item(KEY_HOSTS_EXCLUDE, _as_list, ()),
)
_ITEMS_BY_KEY = {item.key: item for item in _ITEMS}


@dataclass(frozen=True)
class DiskConfig:
    sequence: int
    device: str
    mount_point: str
    format_percent: int
    container_image: str
    service_mount_device: bool
    hosts: tuple[str, ...] = ()
    hosts_only: tuple[str, ...] = ()
    hosts_exclude: tuple[str, ...] = ()

    def provisioned_hosts(self, hosts: Optional[Iterable[str]] = None) -> list[str]:
        """Hosts that carry this disk once the only/exclude filters are applied."""
        candidates = list(hosts if hosts is not None else self.hosts)
        if self.hosts_only:
            return [host for host in candidates if host in self.hosts_only]
        return [host for host in candidates if host not in self.hosts_exclude]


def _build_values(sequence: int, config: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, raw in config.items():
        item = _ITEMS_BY_KEY.get(str(key))
        if item is None:
            raise ConfigurationError(
                "unsupported_disks_item",
                f"disks[{sequence}].{key} = {raw!r}",
            )
        try:
            values[item.key] = item.build(item.key, raw)
        except ValueError as exc:
            raise ConfigurationError(
                "invalid_disks_item",
                f"disks[{sequence}].{key} = {raw!r}: {exc}",
            ) from exc
    for item in _ITEMS:
        values.setdefault(item.key, item.default)
    return values


def build_disk_config(sequence: int, config: dict[str, Any]) -> DiskConfig:
    values = _build_values(sequence, config)
    if not values[KEY_DEVICE]:
        raise ConfigurationError("device_field_missing", f"disks[{sequence}].device = nil")
    if not values[KEY_MOUNT]:
        raise ConfigurationError("mount_point_field_missing", f"disks[{sequence}].mount = nil")
    percent = values[KEY_FORMAT_PERCENT]
    if percent <= 0 or percent > 100:
        raise ConfigurationError(
            "invalid_format_percent",
            f"disks[{sequence}].format_percent = {percent}, expected 1..100",
        )
    hosts_only = tuple(values[KEY_HOSTS_ONLY])
    hosts_exclude = tuple(values[KEY_HOSTS_EXCLUDE])
    if hosts_only and hosts_exclude:
        raise ConfigurationError(
            "conflicting_host_filters",
            f"disks[{sequence}]: conflict fields hosts_exclude: {list(hosts_exclude)} "
            f"and hosts_only: {list(hosts_only)}",
        )
    return DiskConfig(
        sequence=sequence,
        device=values[KEY_DEVICE],
        mount_point=values[KEY_MOUNT],
        format_percent=percent,
        container_image=values[KEY_CONTAINER_IMAGE],
        service_mount_device=values[KEY_SERVICE_MOUNT_DEVICE],
        hosts=tuple(values[KEY_HOST]),
        hosts_only=hosts_only,
        hosts_exclude=hosts_exclude,
    )


def filter_hosts(dc: DiskConfig, hosts: Iterable[str]) -> list[str]:
    return dc.provisioned_hosts(hosts)


# --- raw document ----------------------------------------------------------


@dataclass
class DisksDocument:
    global_settings: dict[str, Any] = field(default_factory=dict)
    disks: list[dict[str, Any]] = field(default_factory=list)

    @property
    def hosts(self) -> list[str]:
        return _as_list(KEY_HOST, self.global_settings.get(KEY_HOST))

    def find(self, device: str) -> Optional[dict[str, Any]]:
        for entry in self.disks:
            if str(entry.get(KEY_DEVICE, "")).strip() == device:
                return entry
        return None


def load_document(raw: str) -> DisksDocument:
    try:
        parsed = yaml.safe_load(raw or "")
    except yaml.YAMLError as exc:
        raise ConfigurationError("parse_disks_failed", str(exc)) from exc
    if parsed is None:
        return DisksDocument()
    if not isinstance(parsed, dict):
        raise ConfigurationError("parse_disks_failed", "disks document must be a mapping")

    global_settings = parsed.get("global") or {}
    if not isinstance(global_settings, dict):
        raise ConfigurationError("parse_disks_failed", "global must be a mapping")
    disks = parsed.get("disk") or []
    if not isinstance(disks, list):
        raise ConfigurationError("parse_disks_failed", "disk must be a list")
    entries: list[dict[str, Any]] = []
    for index, entry in enumerate(disks):
        if not isinstance(entry, dict):
            raise ConfigurationError("parse_disks_failed", f"disks[{index}] must be a mapping")
        entries.append(dict(entry))
    return DisksDocument(global_settings=dict(global_settings), disks=entries)


def render_document(document: DisksDocument) -> str:
    payload: dict[str, Any] = {}
    if document.global_settings:
        payload["global"] = document.global_settings
    payload["disk"] = document.disks
    return yaml.safe_dump(payload, sort_keys=False, default_flow_style=False)


_Coverage = tuple[bool, frozenset[str]]


def _coverage(dc: DiskConfig) -> _Coverage:
    """(True, excluded) when the entry reaches every host but the excluded ones, else (False, hosts)."""
    if dc.hosts:
        return False, frozenset(dc.provisioned_hosts())
    if dc.hosts_only:
        return False, frozenset(dc.hosts_only)
    return True, frozenset(dc.hosts_exclude)


def _overlaps(left: _Coverage, right: _Coverage) -> bool:
    left_open, left_hosts = left
    right_open, right_hosts = right
    if left_open and right_open:
        return True
    if left_open:
        return bool(right_hosts - left_hosts)
    if right_open:
        return bool(left_hosts - right_hosts)
    return bool(left_hosts & right_hosts)


def parse_disks(raw: str) -> list[DiskConfig]:
    document = load_document(raw)
    configs: list[DiskConfig] = []
    devices: set[str] = set()
    mounts: dict[str, list[_Coverage]] = {}
    for index, entry in enumerate(document.disks):
        merged = dict(document.global_settings)
        merged.update(entry)
        dc = build_disk_config(index, merged)
        if dc.device in devices:
            raise ConfigurationError("duplicate_disk", f"disks[{index}].device: duplicate disk {dc.device}")
        coverage = _coverage(dc)
        # A mount point may repeat only across entries that never land on the same host.
        if any(_overlaps(coverage, other) for other in mounts.get(dc.mount_point, ())):
            raise ConfigurationError(
                "duplicate_disk_mount_point",
                f"disks[{index}].mount: duplicate disk mount point {dc.mount_point} on overlapping hosts",
            )
        devices.add(dc.device)
        mounts.setdefault(dc.mount_point, []).append(coverage)
        configs.append(dc)
    _logger.debug("topology.parse", "Parsed disks document", disks=len(configs))
    return configs


# --- reconciliation --------------------------------------------------------


def _host_list(entry: dict[str, Any], key: str) -> list[str]:
    return _as_list(key, entry.get(key))


def _set_host_list(entry: dict[str, Any], key: str, hosts: list[str]) -> None:
    if hosts:
        entry[key] = hosts
    else:
        entry.pop(key, None)


def _withdraw_host(document: DisksDocument, entry: dict[str, Any], host: str) -> None:
    hosts_only = _host_list(entry, KEY_HOSTS_ONLY)
    if hosts_only:
        remaining = [item for item in hosts_only if item != host]
        if remaining:
            entry[KEY_HOSTS_ONLY] = remaining
        else:
            document.disks.remove(entry)
        return
    hosts_exclude = _host_list(entry, KEY_HOSTS_EXCLUDE)
    if host not in hosts_exclude:
        hosts_exclude.append(host)
    entry[KEY_HOSTS_EXCLUDE] = hosts_exclude


def _admit_host(document: DisksDocument, entry: dict[str, Any], host: str) -> None:
    hosts_exclude = [item for item in _host_list(entry, KEY_HOSTS_EXCLUDE) if item != host]
    _set_host_list(entry, KEY_HOSTS_EXCLUDE, hosts_exclude)

    hosts_only = _host_list(entry, KEY_HOSTS_ONLY)
    if not hosts_only:
        return
    if host not in hosts_only:
        hosts_only.append(host)
    all_hosts = document.hosts
    if all_hosts and set(hosts_only) == set(all_hosts):
        entry.pop(KEY_HOSTS_ONLY, None)
    else:
        entry[KEY_HOSTS_ONLY] = hosts_only


_HOST_KEYS = (KEY_DEVICE, KEY_MOUNT, KEY_HOST, KEY_HOSTS_ONLY, KEY_HOSTS_EXCLUDE)


def _carried_items(entry: Optional[dict[str, Any]]) -> dict[str, Any]:
    if entry is None:
        return {}
    return {key: value for key, value in entry.items() if key not in _HOST_KEYS}


def _move_host(
    document: DisksDocument,
    *,
    host: str,
    source_device: str,
    target_device: str,
    mount: str,
    withdraw: bool,
    admit: bool,
) -> DisksDocument:
    patched = copy.deepcopy(document)
    source = patched.find(source_device)
    carried = _carried_items(source)
    if source is not None and withdraw:
        _withdraw_host(patched, source, host)

    if not admit:
        return patched

    target = patched.find(target_device)
    if target is not None:
        _admit_host(patched, target, host)
    else:
        entry: dict[str, Any] = {KEY_DEVICE: target_device, KEY_MOUNT: mount}
        entry.update(carried)
        entry[KEY_HOSTS_ONLY] = [host]
        patched.disks.append(entry)
    return patched


def apply_replacement(
    document: DisksDocument,
    *,
    host: str,
    new_device: str,
    old_device: str,
    mount: str,
    new_record_exists: bool,
) -> DisksDocument:
    """Return a copy of ``document`` where ``host`` uses ``new_device`` instead of ``old_device``.

    The old entry stops provisioning ``host``. Unless the new device is already known
    for that host, the host is admitted to the new device's entry, or a new entry
    restricted to the host is appended reusing the old mount point.
    """
    return _move_host(
        document,
        host=host,
        source_device=old_device,
        target_device=new_device,
        mount=mount,
        withdraw=True,
        admit=not new_record_exists,
    )


def revert_replacement(
    document: DisksDocument,
    *,
    host: str,
    new_device: str,
    old_device: str,
    mount: str,
    new_record_existed: bool,
    readmit_old: bool = True,
) -> DisksDocument:
    """Undo :func:`apply_replacement`: ``host`` goes back to ``old_device``.

    A new-device entry that provisioned ``host`` before the replacement keeps doing so.
    With ``readmit_old`` false the old device is left out, for documents that had
    already dropped it for ``host`` before the replacement.
    """
    return _move_host(
        document,
        host=host,
        source_device=new_device,
        target_device=old_device,
        mount=mount,
        withdraw=not new_record_existed,
        admit=readmit_old,
    )


def _render_checked(document: DisksDocument) -> str:
    rendered = render_document(document)
    # The patched document must still pass parse_disks.
    parse_disks(rendered)
    return rendered


def reconcile_replacement(
    raw: str,
    *,
    host: str,
    new_device: str,
    old_device: str,
    mount: str,
    new_record_exists: bool,
) -> str:
    patched = apply_replacement(
        load_document(raw),
        host=host,
        new_device=new_device,
        old_device=old_device,
        mount=mount,
        new_record_exists=new_record_exists,
    )
    rendered = _render_checked(patched)
    _logger.info(
        "topology.reconcile",
        "Reconciled disks document",
        host=host,
        new_device=new_device,
        old_device=old_device,
        disks=len(patched.disks),
    )
    return rendered


def reconcile_revert(
    raw: str,
    *,
    host: str,
    new_device: str,
    old_device: str,
    mount: str,
    new_record_existed: bool,
    readmit_old: bool = True,
) -> str:
    patched = revert_replacement(
        load_document(raw),
        host=host,
        new_device=new_device,
        old_device=old_device,
        mount=mount,
        new_record_existed=new_record_existed,
        readmit_old=readmit_old,
    )
    rendered = _render_checked(patched)
    _logger.info(
        "topology.revert",
        "Reverted disks document",
        host=host,
        new_device=new_device,
        old_device=old_device,
        disks=len(patched.disks),
    )
    return rendered
