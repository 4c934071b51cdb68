"""RWE export packaging and interchange format serializers"""

from rwe_governance.export.packager import ExportResult, FORMAT_INFO, RWEExportPackager, render_metadata_document
from rwe_governance.export.serializers import CanonicalDataset, SERIALIZERS, parse_native

__all__ = [
    'ExportResult',
    'FORMAT_INFO',
    'RWEExportPackager',
    'render_metadata_document',
    'CanonicalDataset',
    'SERIALIZERS',
    'parse_native',
]
