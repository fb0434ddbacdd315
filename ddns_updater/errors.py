"""Exception hierarchy for ddns-updater"""


class DDNSError(Exception):
    """Base class for all ddns-updater errors"""


class ConfigError(DDNSError):
    """Invalid configuration; aborts the run before any update is sent"""


class IdentityError(ConfigError):
    """The host identity (FQDN) could not be derived or is invalid"""


class DiscoveryError(ConfigError):
    """Interface or address discovery failed"""


class CredentialError(DDNSError):
    """Kerberos credentials could not be acquired"""


class UpdateError(DDNSError):
    """A single DNS update transaction failed"""
