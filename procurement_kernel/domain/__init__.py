"""Pure domain layer: value objects, lifecycle definitions, DTOs.  ZERO I/O."""
