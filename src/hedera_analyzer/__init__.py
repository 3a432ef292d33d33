"""Root analyzer package.

Contains software versions and other metadata.
"""

import importlib.metadata as _pkg

try:
    __version__ = _pkg.version('hedera-token-analyzer')
except _pkg.PackageNotFoundError:
    __version__ = '0.0.0+editable'
