"""Path utilities for consistent path handling across packages."""

import unicodedata
from pathlib import Path


def normalize_path(path: Path | str) -> str:
    """
    Normalize a path for consistent comparison across all packages.
    
    Applies:
    - Unicode NFC normalization (canonical composition)
    - Forward slash conversion, so Windows separators smuggled into an
      archive name are seen as separators by later checks
    
    Args:
        path: Path object or string to normalize
        
    Returns:
        Normalized path string with forward slashes and NFC Unicode normalization
        
    Examples:
        >>> normalize_path("café/résumé.txt")
        'café/résumé.txt'
        >>> normalize_path("assets\\\\app.js")
        'assets/app.js'
    """
    path_str = str(path)
    
    normalized = unicodedata.normalize('NFC', path_str)
    
    normalized = normalized.replace('\\', '/')
    
    return normalized
