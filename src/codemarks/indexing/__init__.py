"""
Indexing modules for codemarks.

Provides:
- Annotation pattern matching
- Ignore file parsing (.gitignore, .ignore, .codemarksignore)
- Ignore-aware directory traversal
- Full and confined scans
- File system watching with debouncing
"""

from codemarks.indexing.ignore_parser import IgnoreFilter, parse_ignore_file
from codemarks.indexing.matcher import Match, PatternMatcher, compile_pattern
from codemarks.indexing.scanner import Scanner, ScanResult, SkippedFile
from codemarks.indexing.walker import DirectoryWalker
from codemarks.indexing.watcher import AnnotationWatcher, BatchReport

__all__ = [
    "PatternMatcher",
    "Match",
    "compile_pattern",
    "IgnoreFilter",
    "parse_ignore_file",
    "DirectoryWalker",
    "Scanner",
    "ScanResult",
    "SkippedFile",
    "AnnotationWatcher",
    "BatchReport",
]
