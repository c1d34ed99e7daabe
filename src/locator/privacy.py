"""Position privacy: encryption, masking, access control and audit."""

import json
import math
import base64
import hashlib
import logging
import secrets
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Dict, Any, List, Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import (
    LOCATION_ENCRYPTION_KEY,
    PRIVACY_ENCRYPTION_ENABLED,
    PRIVACY_MASKING_ENABLED,
    PRIVACY_MASKING_ACCURACY_METERS,
    PRIVACY_ACCESS_CONTROL_ENABLED,
    PRIVACY_ACCESS_LEVEL,
    PRIVACY_AUDIT_ENABLED,
    PRIVACY_FUZZING_ENABLED,
    PRIVACY_FUZZING_RADIUS_METERS,
    PRIVACY_DATA_RETENTION_MS,
    PRIVACY_AUDIT_CAPACITY,
    PRIVACY_RETENTION_INTERVAL_MS,
)
from .errors import IntegrityError, PrivacyDisabledError
from .geo import offset_coordinates
from .models import Position, now_ms

logger = logging.getLogger(__name__)

ALGORITHM = "AES-256-GCM"
IV_BYTES = 12
LOCATION_SHARING = "location_sharing"

# Secure RNG for jitter and audit ids
_secure_random = secrets.SystemRandom()


class AccessLevel(str, Enum):
    STRICT = "strict"
    MODERATE = "moderate"
    RELAXED = "relaxed"


class AccessType(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    SHARE = "share"


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class MaskTarget(str, Enum):
    COORDINATE = "coordinate"
    ADDRESS = "address"
    POI = "poi"
    ALL = "all"


class PrecisionTier(str, Enum):
    CITY = "city"
    DISTRICT = "district"
    STREET = "street"
    PRECISE = "precise"


# Decimal places kept for each tier; None keeps full precision
COORDINATE_DECIMALS = {
    PrecisionTier.CITY: 1,
    PrecisionTier.DISTRICT: 2,
    PrecisionTier.STREET: 3,
    PrecisionTier.PRECISE: None,
}


@dataclass
class PrivacyConfig:
    enable_encryption: bool = PRIVACY_ENCRYPTION_ENABLED
    encryption_key: Optional[str] = LOCATION_ENCRYPTION_KEY
    enable_masking: bool = PRIVACY_MASKING_ENABLED
    masking_accuracy_meters: float = PRIVACY_MASKING_ACCURACY_METERS
    enable_audit: bool = PRIVACY_AUDIT_ENABLED
    data_retention_ms: int = PRIVACY_DATA_RETENTION_MS
    enable_anonymization: bool = True
    enable_location_fuzzing: bool = PRIVACY_FUZZING_ENABLED
    fuzzing_radius_meters: float = PRIVACY_FUZZING_RADIUS_METERS
    enable_access_control: bool = PRIVACY_ACCESS_CONTROL_ENABLED
    access_level: AccessLevel = AccessLevel(PRIVACY_ACCESS_LEVEL)
    audit_capacity: int = PRIVACY_AUDIT_CAPACITY
    retention_interval_ms: int = PRIVACY_RETENTION_INTERVAL_MS


@dataclass
class MaskingRule:
    """
    Declarative masking rule.

    conditions may hold `accuracy_threshold` (rule is skipped for positions
    less accurate than this) and `user_consent` (rule applies only when the
    current location_sharing consent equals this value).
    """
    name: str
    target: MaskTarget
    precision: PrecisionTier
    enabled: bool = True
    conditions: Dict[str, Any] = field(default_factory=dict)


def default_masking_rules(accuracy_threshold: float) -> List[MaskingRule]:
    return [
        MaskingRule(
            "coordinate_masking", MaskTarget.COORDINATE, PrecisionTier.DISTRICT,
            conditions={"accuracy_threshold": accuracy_threshold, "user_consent": False},
        ),
        MaskingRule(
            "address_masking", MaskTarget.ADDRESS, PrecisionTier.CITY,
            conditions={"user_consent": False},
        ),
        MaskingRule(
            "poi_masking", MaskTarget.POI, PrecisionTier.DISTRICT,
            conditions={"user_consent": False},
        ),
    ]


@dataclass
class Accessor:
    """Identity of whoever asks for a position."""
    user_id: Optional[str] = None
    device_id: Optional[str] = None
    app_version: Optional[str] = None
    ip: Optional[str] = None
    authenticated: bool = False

    @property
    def is_anonymous(self) -> bool:
        return not self.user_id and not self.device_id

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Accessor":
        return cls(
            user_id=data.get("user_id"),
            device_id=data.get("device_id"),
            app_version=data.get("app_version"),
            ip=data.get("ip"),
            authenticated=bool(data.get("authenticated", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "device_id": self.device_id,
            "app_version": self.app_version,
            "ip": self.ip,
            "authenticated": self.authenticated,
        }


@dataclass
class EncryptedPosition:
    ciphertext: bytes
    iv: bytes
    algorithm: str
    hash: str
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
            "iv": base64.b64encode(self.iv).decode("ascii"),
            "algorithm": self.algorithm,
            "hash": self.hash,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedPosition":
        return cls(
            ciphertext=base64.b64decode(data["ciphertext"]),
            iv=base64.b64decode(data["iv"]),
            algorithm=data.get("algorithm", ALGORITHM),
            hash=data["hash"],
            timestamp=int(data["timestamp"]),
        )


@dataclass
class AuditLogEntry:
    id: str
    timestamp: int
    access_type: AccessType
    accessor: Accessor
    result: AuditResult
    position_id: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class PrivacyEventType(str, Enum):
    ENCRYPTION = "encryption"
    DECRYPTION = "decryption"
    MASKING = "masking"
    ACCESS_CONTROL = "access_control"
    AUDIT_LOG = "audit_log"
    DATA_EXPIRATION = "data_expiration"
    CONSENT_UPDATE = "consent_update"


@dataclass
class PrivacyEvent:
    type: PrivacyEventType
    timestamp: int
    result: AuditResult = AuditResult.SUCCESS
    data: Any = None
    error: Optional[str] = None


PrivacyListener = Callable[[PrivacyEvent], None]


class ConsentManager:
    """User consents by type; unknown consents count as not granted."""

    def __init__(self):
        self._consents: Dict[str, bool] = {}

    def set_consent(self, consent_type: str, granted: bool):
        self._consents[consent_type] = bool(granted)

    def has_consent(self, consent_type: str) -> bool:
        return self._consents.get(consent_type, False)

    def all_consents(self) -> Dict[str, bool]:
        return dict(self._consents)


class AccessControl:
    """Accessor check for the configured access level."""

    def __init__(self, level: AccessLevel):
        self.level = AccessLevel(level)

    def check(self, accessor: Accessor) -> bool:
        if self.level == AccessLevel.STRICT:
            return bool(accessor.user_id) and accessor.authenticated is True
        if self.level == AccessLevel.MODERATE:
            return bool(accessor.user_id or accessor.device_id)
        return True


def _decode_key(key: Optional[str]) -> bytes:
    if not key:
        return AESGCM.generate_key(bit_length=256)
    raw = base64.urlsafe_b64decode(key)
    if len(raw) != 32:
        raise ValueError(f"Encryption key must be 32 bytes, got {len(raw)}")
    return raw


def _serialize(position: Position) -> bytes:
    return json.dumps(position.to_dict(), sort_keys=True).encode("utf-8")


class PrivacyManager:
    """
    Protect positions before they leave the pipeline.

    Encryption uses AES-256-GCM with a fresh IV per call plus a SHA-256 hash
    of the plaintext, so tampering is detected both by the GCM tag and by
    the hash. Masking applies declarative rules (coordinate rounding,
    address coarsening, POI removal) and optional random jitter. Access
    decisions and protection operations are written to a bounded audit log.

    Attributes:
        config: Active PrivacyConfig
        consent: ConsentManager holding user consents
        masking_rules: Ordered list of MaskingRule
    """

    def __init__(
        self,
        config: Optional[PrivacyConfig] = None,
        scheduler=None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.config = config or PrivacyConfig()
        self.scheduler = scheduler
        self._clock = clock or now_ms
        self._key = _decode_key(self.config.encryption_key)
        self._aesgcm = AESGCM(self._key)
        self.consent = ConsentManager()
        self.access_control = AccessControl(self.config.access_level)
        self.masking_rules = default_masking_rules(self.config.masking_accuracy_meters)
        self._audit_logs: deque = deque(maxlen=self.config.audit_capacity)
        self._audit_lock = threading.Lock()
        self._listeners: Dict[PrivacyEventType, List[PrivacyListener]] = {}
        self._retention_job = None

    # Encryption

    def encrypt(self, position: Position) -> EncryptedPosition:
        """
        Encrypt a position.

        Raises:
            PrivacyDisabledError: If encryption is disabled
        """
        if not self.config.enable_encryption:
            self._emit(PrivacyEvent(PrivacyEventType.ENCRYPTION, self._clock(), AuditResult.FAILURE,
                                    error="encryption disabled"))
            raise PrivacyDisabledError("Encryption is disabled")

        plaintext = _serialize(position)
        iv = secrets.token_bytes(IV_BYTES)
        encrypted = EncryptedPosition(
            ciphertext=self._aesgcm.encrypt(iv, plaintext, None),
            iv=iv,
            algorithm=ALGORITHM,
            hash=hashlib.sha256(plaintext).hexdigest(),
            timestamp=self._clock(),
        )
        self._emit(PrivacyEvent(PrivacyEventType.ENCRYPTION, encrypted.timestamp))
        self.log_access(AccessType.WRITE, metadata={"operation": "encrypt"})
        return encrypted

    def decrypt(self, encrypted: EncryptedPosition) -> Position:
        """
        Decrypt and verify a position.

        Raises:
            IntegrityError: If authentication fails or the hash does not match
            PrivacyDisabledError: If encryption is disabled
        """
        if not self.config.enable_encryption:
            self._emit(PrivacyEvent(PrivacyEventType.DECRYPTION, self._clock(), AuditResult.FAILURE,
                                    error="encryption disabled"))
            raise PrivacyDisabledError("Encryption is disabled")

        try:
            plaintext = self._aesgcm.decrypt(encrypted.iv, encrypted.ciphertext, None)
        except (InvalidTag, ValueError) as e:
            self._integrity_failure("authentication failed")
            raise IntegrityError(details="authentication failed") from e

        if hashlib.sha256(plaintext).hexdigest() != encrypted.hash:
            self._integrity_failure("hash mismatch")
            raise IntegrityError(details="hash mismatch")

        position = Position.from_dict(json.loads(plaintext.decode("utf-8")))
        self._emit(PrivacyEvent(PrivacyEventType.DECRYPTION, self._clock()))
        self.log_access(AccessType.READ, metadata={"operation": "decrypt"})
        return position

    def _integrity_failure(self, reason: str):
        logger.warning(f"Encrypted position failed integrity check: {reason}")
        self._emit(PrivacyEvent(PrivacyEventType.DECRYPTION, self._clock(), AuditResult.FAILURE, error=reason))
        self.log_access(AccessType.READ, result=AuditResult.FAILURE, error=reason,
                        metadata={"operation": "decrypt"})

    # Masking

    def mask(self, position: Position, rule_name: Optional[str] = None, audit: bool = True) -> Position:
        """Apply the applicable masking rules, then jitter if fuzzing is enabled.

        audit=False skips the SHARE audit entry, for internal status views.
        """
        if not self.config.enable_masking:
            return position

        masked = position
        applied = []
        for rule in self._applicable_rules(position, rule_name):
            masked = self._apply_rule(masked, rule)
            applied.append(rule.name)

        if self.config.enable_location_fuzzing:
            masked = self._apply_fuzzing(masked)

        self._emit(PrivacyEvent(PrivacyEventType.MASKING, self._clock(), data={"rules": applied}))
        if audit:
            self.log_access(AccessType.SHARE, metadata={"operation": "mask", "rules": applied})
        return masked

    def anonymize(self, position: Position) -> Position:
        """Drop the timestamp, then mask."""
        if not self.config.enable_anonymization:
            return position
        return self.mask(position.replace(timestamp=None))

    def _applicable_rules(self, position: Position, rule_name: Optional[str]) -> List[MaskingRule]:
        rules = [rule for rule in self.masking_rules if rule.enabled]
        if rule_name:
            return [rule for rule in rules if rule.name == rule_name]

        sharing = self.consent.has_consent(LOCATION_SHARING)
        applicable = []
        for rule in rules:
            threshold = rule.conditions.get("accuracy_threshold")
            if threshold and position.accuracy and position.accuracy > threshold:
                continue
            consent = rule.conditions.get("user_consent")
            if consent is not None and consent != sharing:
                continue
            applicable.append(rule)
        return applicable

    def _apply_rule(self, position: Position, rule: MaskingRule) -> Position:
        target = MaskTarget(rule.target)
        precision = PrecisionTier(rule.precision)
        if target in (MaskTarget.COORDINATE, MaskTarget.ALL):
            position = self._mask_coordinates(position, precision)
        if target in (MaskTarget.ADDRESS, MaskTarget.ALL):
            position = self._mask_address(position, precision)
        if target in (MaskTarget.POI, MaskTarget.ALL):
            position = self._mask_poi(position, precision)
        return position

    @staticmethod
    def _mask_coordinates(position: Position, precision: PrecisionTier) -> Position:
        decimals = COORDINATE_DECIMALS[precision]
        if decimals is None:
            return position
        return position.replace(
            latitude=round(position.latitude, decimals),
            longitude=round(position.longitude, decimals),
        )

    @staticmethod
    def _mask_address(position: Position, precision: PrecisionTier) -> Position:
        if precision == PrecisionTier.CITY:
            return position.replace(address=position.city or position.address, district=None)
        if precision == PrecisionTier.DISTRICT and position.district:
            parts = [part for part in (position.district, position.city) if part]
            return position.replace(address=", ".join(parts))
        return position

    @staticmethod
    def _mask_poi(position: Position, precision: PrecisionTier) -> Position:
        if precision in (PrecisionTier.CITY, PrecisionTier.DISTRICT):
            return position.replace(poi=None)
        return position

    def _apply_fuzzing(self, position: Position) -> Position:
        distance = _secure_random.uniform(0, self.config.fuzzing_radius_meters)
        bearing = _secure_random.uniform(0, 2 * math.pi)
        lat, lon = offset_coordinates(position.latitude, position.longitude, distance, bearing)
        return position.replace(latitude=lat, longitude=lon)

    def add_masking_rule(self, rule: MaskingRule):
        """Add a rule, replacing any existing rule with the same name."""
        self.masking_rules = [r for r in self.masking_rules if r.name != rule.name] + [rule]

    def remove_masking_rule(self, name: str) -> bool:
        before = len(self.masking_rules)
        self.masking_rules = [r for r in self.masking_rules if r.name != name]
        return len(self.masking_rules) < before

    # Access control and audit

    def check_access(self, accessor: Accessor, position: Optional[Position] = None) -> bool:
        """Access decision for the configured level; always True when access control is off."""
        if not self.config.enable_access_control:
            return True

        allowed = self.access_control.check(accessor)
        result = AuditResult.SUCCESS if allowed else AuditResult.FAILURE
        self._emit(PrivacyEvent(PrivacyEventType.ACCESS_CONTROL, self._clock(), result,
                                data={"accessor": accessor.to_dict()}))
        self.log_access(
            AccessType.READ,
            accessor=accessor,
            result=result,
            error=None if allowed else f"access level {self.access_control.level.value}",
            metadata={"operation": "check_access"},
        )
        if not allowed:
            logger.info(f"Access denied for user={accessor.user_id} device={accessor.device_id}")
        return allowed

    def log_access(
        self,
        access_type: AccessType,
        accessor: Optional[Accessor] = None,
        result: AuditResult = AuditResult.SUCCESS,
        position_id: Optional[str] = None,
        error: Optional[str] = None,
        duration_ms: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        """Append an audit entry. Never raises."""
        if not self.config.enable_audit:
            return
        try:
            timestamp = self._clock()
            entry = AuditLogEntry(
                id=f"audit_{timestamp}_{_secure_random.getrandbits(40):010x}",
                timestamp=timestamp,
                access_type=AccessType(access_type),
                accessor=accessor or Accessor(),
                result=AuditResult(result),
                position_id=position_id,
                error=error,
                duration_ms=duration_ms,
                metadata=metadata or {},
            )
            with self._audit_lock:
                self._audit_logs.append(entry)
            self._emit(PrivacyEvent(PrivacyEventType.AUDIT_LOG, timestamp, data=entry))
        except Exception as e:
            logger.error(f"Failed to write audit log entry: {e}")

    def get_audit_logs(
        self,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
        access_type: Optional[AccessType] = None,
        result: Optional[AuditResult] = None,
        user_id: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        with self._audit_lock:
            logs = list(self._audit_logs)
        if start_ms is not None:
            logs = [log for log in logs if log.timestamp >= start_ms]
        if end_ms is not None:
            logs = [log for log in logs if log.timestamp <= end_ms]
        if access_type is not None:
            logs = [log for log in logs if log.access_type == AccessType(access_type)]
        if result is not None:
            logs = [log for log in logs if log.result == AuditResult(result)]
        if user_id is not None:
            logs = [log for log in logs if log.accessor.user_id == user_id]
        return logs

    def purge_expired_logs(self) -> int:
        """Drop audit entries older than the retention window. Returns the number dropped."""
        cutoff = self._clock() - self.config.data_retention_ms
        with self._audit_lock:
            kept = [log for log in self._audit_logs if log.timestamp >= cutoff]
            purged = len(self._audit_logs) - len(kept)
            self._audit_logs = deque(kept, maxlen=self.config.audit_capacity)
        if purged:
            logger.info(f"Purged {purged} expired audit log entries")
        self._emit(PrivacyEvent(PrivacyEventType.DATA_EXPIRATION, self._clock(),
                                data={"purged": purged, "remaining": len(kept)}))
        return purged

    # Consent

    def set_consent(self, consent_type: str, granted: bool):
        self.consent.set_consent(consent_type, granted)
        self._emit(PrivacyEvent(PrivacyEventType.CONSENT_UPDATE, self._clock(),
                                data={"type": consent_type, "granted": bool(granted)}))

    # Lifecycle

    def start(self):
        """Register the audit retention sweep with the scheduler."""
        if self.scheduler is None:
            return
        self.stop()
        self._retention_job = self.scheduler.every(
            self.config.retention_interval_ms, self.purge_expired_logs, name="privacy-retention"
        )

    def stop(self):
        if self._retention_job is not None:
            self._retention_job.cancel()
            self._retention_job = None

    def update_config(self, **changes):
        """Apply config changes; key, access level and audit capacity take effect immediately."""
        changes = {k: v for k, v in changes.items() if v is not None}
        old = self.config
        self.config = replace(self.config, **changes)

        if self.config.encryption_key != old.encryption_key and self.config.encryption_key:
            self._key = _decode_key(self.config.encryption_key)
            self._aesgcm = AESGCM(self._key)
        if self.config.access_level != old.access_level:
            self.access_control = AccessControl(self.config.access_level)
        if self.config.masking_accuracy_meters != old.masking_accuracy_meters:
            for rule in self.masking_rules:
                if "accuracy_threshold" in rule.conditions:
                    rule.conditions["accuracy_threshold"] = self.config.masking_accuracy_meters
        if self.config.audit_capacity != old.audit_capacity:
            with self._audit_lock:
                self._audit_logs = deque(self._audit_logs, maxlen=self.config.audit_capacity)
        if self._retention_job is not None and self.config.retention_interval_ms != old.retention_interval_ms:
            self.start()

    def destroy(self):
        self.stop()
        self._listeners.clear()
        with self._audit_lock:
            self._audit_logs.clear()

    # Events

    def add_listener(self, event_type: PrivacyEventType, listener: PrivacyListener):
        self._listeners.setdefault(event_type, []).append(listener)

    def remove_listener(self, event_type: PrivacyEventType, listener: PrivacyListener):
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    def _emit(self, event: PrivacyEvent):
        for listener in list(self._listeners.get(event.type, [])):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Privacy event listener error: {e}")
