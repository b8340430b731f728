from .availability_zones import resolve_zone_ids
from .certificates import AcmCertificateResolver, CertificateResolver, StaticCertificateResolver

__all__ = [
    "AcmCertificateResolver",
    "CertificateResolver",
    "StaticCertificateResolver",
    "resolve_zone_ids",
]
