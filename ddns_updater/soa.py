"""
Find the primary master for the zone enclosing a name by walking up its
labels and asking for an SOA at each suffix.
"""

import logging
from typing import Dict, List, Optional

from .query import DNSQueryClient
from .records import ZoneAuthority, canonical_name

log = logging.getLogger(__name__)


class SOAResolver:
    """SOA-chain walker with a cache that lives for one run"""

    def __init__(self, client: DNSQueryClient):
        self.client = client
        self._masters: Dict[str, Optional[str]] = {}

    def _master_for(self, suffix: str) -> Optional[str]:
        if suffix not in self._masters:
            soa = [r for r in self.client.query(suffix, 'SOA')
                   if r.rdtype == 'SOA' and canonical_name(r.name) == suffix]
            self._masters[suffix] = soa[0].value if soa else None
        return self._masters[suffix]

    def resolve_authority(self, name: str) -> Optional[ZoneAuthority]:
        """Most specific ancestor of name that has an SOA, or None"""
        labels: List[str] = canonical_name(name).split('.')

        for i in range(1, len(labels)):
            suffix = '.'.join(labels[i:])
            master = self._master_for(suffix)
            if master:
                log.debug(f"Zone for {name} is {suffix}, master {master}")
                return ZoneAuthority(suffix, master)

        log.info(f"No SOA found above {name}, using default server")
        return None
