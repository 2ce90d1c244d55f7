"""AumAI ImageBundle: unpack OCI images into runtime bundles and repack them."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("aumai-imagebundle")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"
