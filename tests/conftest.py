"""
Pytest configuration: puts the flat modules at the repository root on sys.path
so the suite runs from a plain checkout as well as an editable install.
"""

import os
import sys

_repo_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _repo_root not in sys.path:
    sys.path.insert(0, _repo_root)
