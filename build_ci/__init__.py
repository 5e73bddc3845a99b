"""
build_ci — integrate the Compiler Interrupts into an already-built Cargo package.

Runs ``cargo build`` with IR emission and linker logging enabled, instruments
every codegen unit's IR with the Compiler Interrupts pass, patches the
compiled-library archives and re-runs the linker into a segregated
``<mode>-ci`` output directory.
"""

__version__ = "4.1.0"
PACKAGE_NAME = "build_ci"
INTEGRATION_VERSION = "v4"
SCHEMA_VERSION = "0.1"
