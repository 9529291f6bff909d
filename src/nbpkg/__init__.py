from ._version import __version__
from .api import activate, add
from .client import NbpkgError, NbpkgHTTPError, PackageNotFoundError, RegistryClient
from .environment import PackageEnvironment, create_empty_environment
from .registry import ApiReleaseRepository, PackageRegistry
from .resolver import TIERS, PreserveLevel, ResolutionError, Resolver
from .sync import DocumentPackages, PackageCoordinator, SyncError, SyncResult
from .usage import collect_references, external_package_names, uses_managed_packages

__all__ = [
    "__version__",
    "activate",
    "add",
    "ApiReleaseRepository",
    "DocumentPackages",
    "NbpkgError",
    "NbpkgHTTPError",
    "PackageCoordinator",
    "PackageEnvironment",
    "PackageNotFoundError",
    "PackageRegistry",
    "PreserveLevel",
    "RegistryClient",
    "ResolutionError",
    "Resolver",
    "SyncError",
    "SyncResult",
    "TIERS",
    "collect_references",
    "create_empty_environment",
    "external_package_names",
    "uses_managed_packages",
]
