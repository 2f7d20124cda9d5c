#!/usr/bin/env python3
"""
keen-pbr configuration: pydantic models, consistency checks and the
ConfigStore that owns the live configuration.

The configuration file is YAML:

    general:
      lists_output_dir: lists.d
      interface_monitoring_interval_seconds: 30
    lists:
      - list_name: work
        url: https://example.com/work.lst
      - list_name: local
        hosts: [example.com, 10.0.0.0/8]
    ipsets:
      - ipset_name: vpn_sites
        ip_version: 4
        lists: [work, local]
        routing:
          interfaces: [nwg0, eth3]
          kill_switch: true
          fwmark: 1001
          table: 1001
          priority: 1001

ListSource, Outbound and OutboundTable are closed tagged unions keyed by
``type``. Components never reach for a global configuration; they receive
the ConfigStore and read it under its read lock.
"""

import copy
import hashlib
import ipaddress
import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Any, Callable, Dict, Iterator, List, Literal, Optional, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from pbr_errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.environ.get("KEEN_PBR_CONFIG", "/opt/etc/keen-pbr/keen-pbr.yaml")
DEFAULT_KEENETIC_URL = "http://127.0.0.1:79/rci"

CONFIG_VERSION = 1

# Kernel ipset names are limited to 31 characters
IPSET_NAME_PATTERN = r"^[a-z][a-z0-9_]*$"
MAX_IPSET_NAME_LEN = 31
LIST_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]*$"
TAG_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]*$"
RULE_ID_PATTERN = r"^[a-z][a-z0-9_]*$"
INTERFACE_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.@-]{0,14}$"

DEFAULT_MARK_RULE = [
    "-m", "mark", "--mark", "0x0/0xffffffff",
    "-m", "set", "--match-set", "{{ipset_name}}", "dst,src",
    "-j", "MARK", "--set-mark", "{{fwmark}}",
]

PROXY_SCHEMES = ("socks5", "socks5h", "http", "https")


def _parse_ip_literal(value: str) -> Union[ipaddress.IPv4Address, ipaddress.IPv6Address, None]:
    """Parse an IPv4 literal or a bracketed IPv6 literal."""
    if value.startswith("[") and value.endswith("]"):
        try:
            addr = ipaddress.ip_address(value[1:-1])
        except ValueError:
            return None
        return addr if addr.version == 6 else None
    try:
        addr = ipaddress.ip_address(value)
    except ValueError:
        return None
    return addr if addr.version == 4 else None


def validate_dns_override(value: str) -> str:
    """Accept ``ip`` or ``ip#port``; IPv6 must be bracketed."""
    address, sep, port = value.rpartition("#")
    if not sep:
        address, port = value, ""
    if _parse_ip_literal(address) is None:
        raise ValueError(f"invalid DNS override address: {address!r}")
    if port and not (port.isdigit() and 1 <= int(port) <= 65535):
        raise ValueError(f"invalid DNS override port: {port!r}")
    return value


# ---------------------------------------------------------------------------
# Lists
# ---------------------------------------------------------------------------

class _ListBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    list_name: str = Field(..., pattern=LIST_NAME_PATTERN, max_length=64)


class InlineListSource(_ListBase):
    """Entries given literally in the configuration"""
    type: Literal["inline"] = "inline"
    hosts: List[str] = Field(..., min_length=1)


class LocalListSource(_ListBase):
    """A file on the router, re-read when its mtime changes"""
    type: Literal["file"] = "file"
    file: str = Field(..., min_length=1)


class RemoteListSource(_ListBase):
    """A list downloaded over HTTP(S) into the lists directory"""
    type: Literal["url"] = "url"
    url: str

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"list url must be http(s): {value!r}")
        return value


ListSource = Annotated[
    Union[InlineListSource, LocalListSource, RemoteListSource],
    Field(discriminator="type"),
]

_LIST_KIND_KEYS = {"url": "url", "file": "file", "hosts": "inline"}


def _infer_list_type(raw: Any) -> Any:
    """Fill in ``type`` for lists written in the url/file/hosts shorthand."""
    if not isinstance(raw, dict) or "type" in raw:
        return raw
    present = [key for key in _LIST_KIND_KEYS if raw.get(key)]
    if len(present) != 1:
        raise ValueError(
            f"list {raw.get('list_name')!r} must contain exactly one of "
            f"\"url\", \"file\" or non-empty \"hosts\""
        )
    return dict(raw, type=_LIST_KIND_KEYS[present[0]])


_LIST_SOURCE_ADAPTER = TypeAdapter(ListSource)


def parse_list_source(data: Any):
    """Validate one list definition (shorthand or tagged) into its variant model."""
    if isinstance(data, (InlineListSource, LocalListSource, RemoteListSource)):
        return data
    try:
        return _LIST_SOURCE_ADAPTER.validate_python(_infer_list_type(data))
    except (PydanticValidationError, ValueError) as e:
        raise ValidationError(f"invalid list definition: {e}")


# ---------------------------------------------------------------------------
# IPSet policies
# ---------------------------------------------------------------------------

class IPTablesRuleTemplate(BaseModel):
    """A packet-marking rule; args may reference {{ipset_name}}, {{fwmark}}, {{table}}, {{priority}}"""
    model_config = ConfigDict(extra="forbid")

    chain: str = "PREROUTING"
    table: str = "mangle"
    rule: List[str] = Field(..., min_length=1)

    def render(self, variables: Dict[str, str]) -> List[str]:
        rendered = []
        for arg in self.rule:
            for key, value in variables.items():
                arg = arg.replace("{{" + key + "}}", value)
            rendered.append(arg)
        return rendered


class RoutingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interfaces: List[str] = Field(..., min_length=1)
    kill_switch: bool = True
    fwmark: int = Field(..., ge=1, le=0xFFFFFFFF)
    table: int = Field(..., ge=1, le=0xFFFFFFFF)
    priority: int = Field(..., ge=1, le=32765)
    dns_override: Optional[str] = None
    default_gateway: Optional[str] = None

    @field_validator("interfaces")
    @classmethod
    def _check_interfaces(cls, value: List[str]) -> List[str]:
        seen = set()
        for name in value:
            if name in seen:
                raise ValueError(f"duplicate interface {name!r}")
            seen.add(name)
        return value

    @field_validator("dns_override")
    @classmethod
    def _check_dns_override(cls, value: Optional[str]) -> Optional[str]:
        if value:
            return validate_dns_override(value)
        return None


class IPSetPolicy(BaseModel):
    """One ipset-backed routing policy (fwmark -> table -> interface)"""
    model_config = ConfigDict(extra="forbid")

    ipset_name: str = Field(..., pattern=IPSET_NAME_PATTERN, max_length=MAX_IPSET_NAME_LEN)
    ip_version: Literal[4, 6] = 4
    lists: List[str] = Field(..., min_length=1)
    flush_before_applying: bool = False
    routing: RoutingConfig
    iptables_rules: Optional[List[IPTablesRuleTemplate]] = None

    @model_validator(mode="after")
    def _check_gateway_family(self) -> "IPSetPolicy":
        gateway = self.routing.default_gateway
        if gateway:
            try:
                addr = ipaddress.ip_address(gateway.strip("[]"))
            except ValueError:
                raise ValueError(f"invalid default_gateway {gateway!r}")
            if addr.version != self.ip_version:
                raise ValueError(
                    f"default_gateway {gateway} does not match ip_version {self.ip_version}"
                )
        return self

    @property
    def family(self) -> str:
        return "inet6" if self.ip_version == 6 else "inet"

    def template_variables(self) -> Dict[str, str]:
        return {
            "ipset_name": self.ipset_name,
            "fwmark": str(self.routing.fwmark),
            "table": str(self.routing.table),
            "priority": str(self.routing.priority),
        }

    def mark_rules(self) -> List[IPTablesRuleTemplate]:
        if self.iptables_rules:
            return list(self.iptables_rules)
        return [IPTablesRuleTemplate(chain="PREROUTING", table="mangle", rule=list(DEFAULT_MARK_RULE))]


# ---------------------------------------------------------------------------
# Outbounds / rules (transparent proxy model)
# ---------------------------------------------------------------------------

class InterfaceOutbound(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["interface"] = "interface"
    tag: str = Field(..., pattern=TAG_PATTERN)
    ifname: str = Field(..., pattern=INTERFACE_NAME_PATTERN)


class ProxyOutbound(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["proxy"] = "proxy"
    tag: str = Field(..., pattern=TAG_PATTERN)
    url: str

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in PROXY_SCHEMES or not parsed.hostname:
            raise ValueError(f"proxy url must be one of {PROXY_SCHEMES}: {value!r}")
        return value


Outbound = Annotated[Union[InterfaceOutbound, ProxyOutbound], Field(discriminator="type")]


class StaticOutboundTable(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["static"] = "static"
    outbound: str = Field(..., min_length=1)

    def outbound_tags(self) -> List[str]:
        return [self.outbound]


class URLTestOutboundTable(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    type: Literal["urltest"] = "urltest"
    outbounds: List[str] = Field(..., min_length=1)
    test_url: str = Field(..., alias="testUrl", min_length=1)
    interval_seconds: int = Field(180, ge=10)

    def outbound_tags(self) -> List[str]:
        return list(self.outbounds)


OutboundTable = Annotated[
    Union[StaticOutboundTable, URLTestOutboundTable],
    Field(discriminator="type"),
]


class DNSServer(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    type: Literal["udp", "tls", "https"] = "udp"
    server: str = Field(..., min_length=1)
    port: int = Field(53, ge=1, le=65535)
    path: Optional[str] = None
    through_outbound: bool = Field(True, alias="throughOutbound")

    @model_validator(mode="after")
    def _check_path(self) -> "DNSServer":
        if self.type == "https" and not self.path:
            raise ValueError("path is required for https DNS servers")
        return self


class Rule(BaseModel):
    """Binds lists and DNS servers to an outbound table"""
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., pattern=RULE_ID_PATTERN, max_length=26)
    enabled: bool = True
    lists: List[str] = Field(..., min_length=1)
    dns_servers: List[DNSServer] = Field(default_factory=list)
    outbound_table: OutboundTable

    @property
    def ipset_name(self) -> str:
        return f"kpbr_{self.id}"


# ---------------------------------------------------------------------------
# General settings
# ---------------------------------------------------------------------------

class AutoUpdateConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    interval_hours: int = Field(24, ge=1)


class DNSRedirectConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    listen_port: int = Field(15353, ge=1, le=65535)
    interfaces: List[str] = Field(default_factory=lambda: ["br0", "br1"])


class GeneralConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    lists_output_dir: str = "lists.d"
    interface_monitoring_interval_seconds: int = Field(0, ge=0)
    auto_update_lists: AutoUpdateConfig = Field(default_factory=AutoUpdateConfig)
    use_keenetic_api: bool = True
    keenetic_url: str = DEFAULT_KEENETIC_URL
    dns_redirect: DNSRedirectConfig = Field(default_factory=DNSRedirectConfig)
    dnsmasq_config_path: Optional[str] = None


class TProxyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    fwmark: int = Field(0x105, ge=1, le=0xFFFFFFFF)
    table: int = Field(105, ge=1)
    priority: int = Field(105, ge=1, le=32765)
    listen_addr: str = "127.0.0.1"
    listen_port: int = Field(1602, ge=1, le=65535)
    interfaces: List[str] = Field(default_factory=lambda: ["br0"])
    bypass_ipset: str = Field("kpbr_localv4", pattern=IPSET_NAME_PATTERN)
    # sing-box routing config rendered on every apply; relative to the config dir
    proxy_config_path: str = Field("sing-box.json", min_length=1)
    dns_listen_addr: str = "127.0.0.42"
    dns_listen_port: int = Field(53, ge=1, le=65535)
    reload_command: List[str] = Field(default_factory=list)


class PBRConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    config_version: int = CONFIG_VERSION
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    lists: List[ListSource] = Field(default_factory=list)
    ipsets: List[IPSetPolicy] = Field(default_factory=list)
    outbounds: List[Outbound] = Field(default_factory=list)
    rules: List[Rule] = Field(default_factory=list)
    tproxy: TProxyConfig = Field(default_factory=TProxyConfig)

    @field_validator("lists", mode="before")
    @classmethod
    def _infer_list_types(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [_infer_list_type(item) for item in value]
        return value

    def get_list(self, name: str):
        for lst in self.lists:
            if lst.list_name == name:
                return lst
        return None

    def get_policy(self, ipset_name: str) -> Optional[IPSetPolicy]:
        for policy in self.ipsets:
            if policy.ipset_name == ipset_name:
                return policy
        return None

    def get_outbound(self, tag: str):
        for outbound in self.outbounds:
            if outbound.tag == tag:
                return outbound
        return None

    def list_references(self, name: str) -> List[str]:
        """Return descriptions of every policy or rule using list ``name``."""
        refs = [f"ipset {p.ipset_name}" for p in self.ipsets if name in p.lists]
        refs.extend(f"rule {r.id}" for r in self.rules if name in r.lists)
        return refs

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _find_duplicates(values: List[Any]) -> List[Any]:
    seen, duplicates = set(), []
    for value in values:
        if value in seen and value not in duplicates:
            duplicates.append(value)
        seen.add(value)
    return duplicates


def check_consistency(cfg: PBRConfig) -> None:
    """Cross-object checks that a single model validator cannot express.

    Raises:
        ConflictError: Duplicate names or fwmark/table/priority collisions
        NotFoundError: A policy or rule references a missing list or outbound
    """
    list_names = [lst.list_name for lst in cfg.lists]
    duplicates = _find_duplicates(list_names)
    if duplicates:
        raise ConflictError(f"duplicate list names: {duplicates}", {"lists": duplicates})

    checks = [
        ("ipset names", [p.ipset_name for p in cfg.ipsets]),
        ("fwmarks", [p.routing.fwmark for p in cfg.ipsets]),
        ("routing tables", [p.routing.table for p in cfg.ipsets]),
        ("rule priorities", [p.routing.priority for p in cfg.ipsets]),
        ("outbound tags", [o.tag for o in cfg.outbounds]),
        ("rule ids", [r.id for r in cfg.rules]),
    ]
    if cfg.tproxy.enabled:
        checks.extend([
            ("fwmarks", [p.routing.fwmark for p in cfg.ipsets] + [cfg.tproxy.fwmark]),
            ("routing tables", [p.routing.table for p in cfg.ipsets] + [cfg.tproxy.table]),
            ("rule priorities", [p.routing.priority for p in cfg.ipsets] + [cfg.tproxy.priority]),
        ])
    for what, values in checks:
        duplicates = _find_duplicates(values)
        if duplicates:
            raise ConflictError(f"duplicate {what}: {duplicates}", {what.replace(" ", "_"): duplicates})

    known = set(list_names)
    for policy in cfg.ipsets:
        for name in policy.lists:
            if name not in known:
                raise NotFoundError(
                    f"ipset {policy.ipset_name} references unknown list {name!r}",
                    {"ipset": policy.ipset_name, "list": name},
                )

    check_rules(cfg.rules, cfg)


def check_rules(rules: List[Rule], cfg: PBRConfig) -> None:
    known_lists = {lst.list_name for lst in cfg.lists}
    known_tags = {o.tag for o in cfg.outbounds}
    for rule in rules:
        for name in rule.lists:
            if name not in known_lists:
                raise NotFoundError(
                    f"rule {rule.id} references unknown list {name!r}",
                    {"rule": rule.id, "list": name},
                )
        tags = rule.outbound_table.outbound_tags()
        if not any(tag in known_tags for tag in tags):
            raise NotFoundError(
                f"rule {rule.id}: none of the outbounds {tags} exist",
                {"rule": rule.id, "outbounds": tags},
            )


def parse_config(data: Any) -> PBRConfig:
    """Validate raw (YAML/JSON decoded) data into a PBRConfig."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("configuration root must be a mapping")
    try:
        cfg = PBRConfig.model_validate(data)
    except PydanticValidationError as e:
        errors = [
            {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError(f"invalid configuration: {len(errors)} error(s)", {"errors": errors})
    check_consistency(cfg)
    return cfg


def config_hash(cfg: PBRConfig) -> str:
    """md5 of the canonical JSON form; used to detect resolver config drift."""
    canonical = json.dumps(cfg.dump(), sort_keys=True, separators=(",", ":"))
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class ConfigStore:
    """Owns the live configuration and its YAML file.

    Readers take a read lock (``with store.read() as cfg``); mutations go
    through update(), which validates a copy and swaps it in only when the
    copy is valid and has been saved.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None, config: Optional[PBRConfig] = None):
        self.path = Path(path) if path else None
        self._lock = ReadWriteLock()
        self._config = config or PBRConfig()

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: Optional[Union[str, Path]] = None) -> "ConfigStore":
        return cls(path=path, config=parse_config(data))

    @property
    def config_dir(self) -> Path:
        return self.path.parent if self.path else Path.cwd()

    def read_file(self) -> PBRConfig:
        """Parse and validate the file on disk without installing it.

        Raises:
            NotFoundError: The file does not exist
            ValidationError: No path, unreadable file, bad YAML or invalid content
        """
        if self.path is None:
            raise ValidationError("config store has no file path")
        try:
            raw = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise NotFoundError(f"configuration file not found: {self.path}", {"path": str(self.path)})
        except OSError as e:
            raise ValidationError(f"cannot read configuration {self.path}: {e.strerror or e}", {"path": str(self.path)})
        except yaml.YAMLError as e:
            raise ValidationError(f"configuration is not valid YAML: {e}", {"path": str(self.path)})
        return parse_config(raw)

    def load(self) -> PBRConfig:
        cfg = self.read_file()
        with self._lock.write_locked():
            self._config = cfg
        logger.info(
            f"Loaded configuration {self.path}: {len(cfg.lists)} lists, "
            f"{len(cfg.ipsets)} ipsets, {len(cfg.rules)} rules"
        )
        return cfg

    def save(self) -> None:
        with self._lock.read_locked():
            self._write_file(self._config)

    def _write_file(self, cfg: PBRConfig) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(
            yaml.safe_dump(cfg.dump(), sort_keys=False, allow_unicode=True),
            encoding="utf-8",
        )
        os.replace(tmp_path, self.path)
        logger.debug(f"Configuration saved to {self.path}")

    @contextmanager
    def read(self) -> Iterator[PBRConfig]:
        """Hold the read lock while using the live configuration (do not mutate it)."""
        with self._lock.read_locked():
            yield self._config

    def snapshot(self) -> PBRConfig:
        with self._lock.read_locked():
            return self._config.model_copy(deep=True)

    def update(self, mutator: Callable[[PBRConfig], None]) -> PBRConfig:
        """Apply ``mutator`` to a copy, re-validate, persist and install it.

        The live configuration is untouched if the mutator raises or the
        result fails validation.
        """
        with self._lock.write_locked():
            candidate = self._config.model_copy(deep=True)
            mutator(candidate)
            validated = parse_config(copy.deepcopy(candidate.dump()))
            self._write_file(validated)
            self._config = validated
        return validated

    def replace_rules(self, rules: List[Union[Rule, Dict[str, Any]]]) -> PBRConfig:
        """Replace every rule at once; nothing changes unless all are valid."""
        try:
            parsed = [r if isinstance(r, Rule) else Rule.model_validate(r) for r in rules]
        except PydanticValidationError as e:
            raise ValidationError(f"invalid rule: {e.errors()[0]['msg']}")

        def _replace(cfg: PBRConfig) -> None:
            check_rules(parsed, cfg)
            cfg.rules = parsed

        return self.update(_replace)

    def abs_lists_dir(self, cfg: Optional[PBRConfig] = None) -> Path:
        if cfg is None:
            with self.read() as current:
                lists_dir = current.general.lists_output_dir
        else:
            lists_dir = cfg.general.lists_output_dir
        path = Path(lists_dir)
        return path if path.is_absolute() else self.config_dir / path

    def abs_path(self, value: str) -> Path:
        path = Path(value)
        return path if path.is_absolute() else self.config_dir / path
