"""
ddns-updater - reconcile a host's DNS records with its current addresses
after a DHCP lease change.
"""

__version__ = '1.0.0'
