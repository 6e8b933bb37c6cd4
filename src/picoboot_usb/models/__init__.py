"""Data models for target memory maps."""

from .memory import MemoryRange, MemoryRegion, RegionKind, Target
