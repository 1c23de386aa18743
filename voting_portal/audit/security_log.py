# voting_portal/audit/security_log.py

import base64
import hashlib
import json
import logging
import os
import threading

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from voting_portal.database.models import utcnow

logger = logging.getLogger(__name__)


# Append-only security event log with hash chaining and Ed25519 signatures
class SecurityEventLog:
    def __init__(self, log_dir='logs', signing_key: Ed25519PrivateKey = None):
        self.log_dir = log_dir
        self.log_file = os.path.join(log_dir, 'security_events.log')
        self.previous_hash = None
        self._lock = threading.Lock()

        os.makedirs(log_dir, exist_ok=True)

        self.signing_key = signing_key or Ed25519PrivateKey.generate()
        self._load_previous_hash()

    def _load_previous_hash(self):
        if not os.path.exists(self.log_file):
            return
        with open(self.log_file, 'r') as f:
            lines = [line for line in f if line.strip()]
        if lines:
            try:
                self.previous_hash = json.loads(lines[-1]).get('hash')
            except json.JSONDecodeError:
                logger.error("Security log %s has a corrupt tail entry", self.log_file)
                self.previous_hash = None

    def log_security_event(self, event_type, data, user_id=None):
        """Append one signed entry. Also mirrored to the application log."""
        logger.warning("Security event %s user=%s %s", event_type, user_id, data)
        try:
            with self._lock:
                log_entry = {
                    "timestamp": utcnow().isoformat(),
                    "event_type": event_type,
                    "data": data,
                    "user_id": user_id,
                    "previous_hash": self.previous_hash,
                }
                entry_json = json.dumps(log_entry, sort_keys=True, default=str)
                entry_hash = hashlib.sha256(entry_json.encode()).hexdigest()
                signature = self.signing_key.sign(entry_json.encode())
                log_entry['hash'] = entry_hash
                log_entry['signature'] = base64.b64encode(signature).decode()

                with open(self.log_file, 'a') as f:
                    f.write(json.dumps(log_entry, default=str) + "\n")

                self.previous_hash = entry_hash
                return entry_hash
        except OSError as e:
            # the request that triggered the event still completes
            logger.error("Security log write failed: %s", e)
            return None

    def verify_log_integrity(self) -> bool:
        if not os.path.exists(self.log_file):
            return True
        public_key = self.signing_key.public_key()
        previous_hash = None
        with open(self.log_file, 'r') as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    log_entry = json.loads(line)
                    entry = dict(log_entry)
                    signature = base64.b64decode(entry.pop('signature'))
                    entry_hash = entry.pop('hash')
                except (json.JSONDecodeError, KeyError, ValueError):
                    return False
                if entry.get('previous_hash') != previous_hash:
                    return False
                entry_json = json.dumps(entry, sort_keys=True, default=str).encode()
                if hashlib.sha256(entry_json).hexdigest() != entry_hash:
                    return False
                try:
                    public_key.verify(signature, entry_json)
                except InvalidSignature:
                    return False
                previous_hash = entry_hash
        return True
