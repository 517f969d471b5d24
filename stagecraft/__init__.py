"""
stagecraft
----------
Declarative multi-stage image builds: stages, artifacts, packages, validation.
"""

import stagecraft.log

__version__ = "0.3.0"

stagecraft.log.setup()
