"""Kerberos ticket acquisition for GSS-TSIG updates"""

import os
import base64
import logging
import subprocess
from typing import Optional

from .errors import CredentialError

log = logging.getLogger(__name__)

DEFAULT_KEYTAB = '/etc/krb5.keytab'


def machine_principal(short_name: str) -> str:
    """Active Directory machine account principal, e.g. HOST$"""
    return f"{short_name.upper()}$"


class KerberosAuth:
    """Handles Kerberos authentication and ticket management"""

    def __init__(self, principal: str, password: Optional[str] = None,
                 keytab_path: str = DEFAULT_KEYTAB, keytab_base64: Optional[str] = None,
                 timeout: float = 10.0):
        self.principal = principal
        self.password = password
        self.keytab_path = keytab_path
        self.timeout = timeout

        if password:
            log.info("Using password authentication")
        elif keytab_base64:
            self._ensure_keytab(keytab_base64)

    def _ensure_keytab(self, keytab_b64: str):
        """Decode a base64 keytab to keytab_path unless one is already there"""
        if os.path.exists(self.keytab_path):
            return
        try:
            keytab_data = base64.b64decode(keytab_b64)
            os.makedirs(os.path.dirname(self.keytab_path) or '.', exist_ok=True)
            with open(self.keytab_path, 'wb') as f:
                f.write(keytab_data)
            os.chmod(self.keytab_path, 0o600)
        except (ValueError, OSError) as e:
            raise CredentialError(f"Could not write keytab {self.keytab_path}: {e}")
        log.info(f"Decoded keytab to {self.keytab_path}")

    def get_ticket(self):
        """Acquire Kerberos ticket using keytab or password"""
        if self.password:
            cmd = ['kinit', self.principal]
            stdin = self.password
        else:
            cmd = ['kinit', '-k', '-t', self.keytab_path, self.principal]
            stdin = None

        try:
            result = subprocess.run(cmd, input=stdin, capture_output=True,
                                    text=True, timeout=self.timeout)
        except (OSError, subprocess.SubprocessError) as e:
            raise CredentialError(f"Failed to run kinit: {e}")

        if result.returncode != 0:
            raise CredentialError(f"kinit failed for {self.principal}: {result.stderr.strip()}")
        log.info(f"Acquired Kerberos ticket for {self.principal}")

    def check_ticket_validity(self) -> bool:
        """Check if current ticket is valid"""
        try:
            result = subprocess.run(['klist', '-s'], capture_output=True, timeout=self.timeout)
        except (OSError, subprocess.SubprocessError):
            return False
        return result.returncode == 0

    def ensure_valid_ticket(self):
        """Ensure we have a valid Kerberos ticket"""
        if not self.check_ticket_validity():
            log.info("Kerberos ticket expired or missing, acquiring new ticket")
            self.get_ticket()
