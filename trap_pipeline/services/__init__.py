"""Pipeline service layer."""

from trap_pipeline.services.archiver import RawArchiver  # noqa: F401
from trap_pipeline.services.reconciler import DeviceStateReconciler  # noqa: F401
from trap_pipeline.services.registry_client import RegistryClient  # noqa: F401
from trap_pipeline.services.transformer import ProcessedRecordWriter, transform_envelope  # noqa: F401
