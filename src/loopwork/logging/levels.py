"""
HUMAN logging level — readable run traceability.

Custom level between INFO (20) and WARNING (30). It does not indicate
severity; it marks the high-level events an operator follows: runs
starting, phases advancing, skills finishing, gates waiting.

Hierarchy:
    debug  (10) -> memory writes, gate fingerprints, persistence
    info   (20) -> system operations (catalog loaded, template registered)
    human  (25) -> what the engine does with a run
    warn   (30) -> non-fatal problems
    error  (40) -> errors
"""

import logging

import structlog

HUMAN = 25
logging.addLevelName(HUMAN, "HUMAN")


# structlog's stdlib BoundLogger.log(HUMAN, ...) proxies to Logger.human()
def _human_method(self, message, *args, **kwargs):
    if self.isEnabledFor(HUMAN):
        self._log(HUMAN, message, args, **kwargs)


logging.Logger.human = _human_method

try:
    structlog.stdlib.LEVEL_TO_NAME[HUMAN] = "human"
    structlog.stdlib.NAME_TO_LEVEL["human"] = HUMAN
except AttributeError:
    pass
