"""
Environment preparers.

Preparation runs in two phases:
  1. configure(): sequential, in registration order. The only phase that may
     change the shared config or the launcher context.
  2. prepare():   concurrent, one task per preparer, behind a barrier. Preparers
     only read shared state here and start their background monitors.

A preparer that mutates shared state from a mode listener must do so on the
STARTING notification, which completes before the mode starts executing.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Iterator, List

from ..errors import FatalConfigurationError

logger = logging.getLogger("launcher.env")


class Preparer:
    """Base class of all environment preparers."""

    name: str = ""

    def is_config_acceptable(self, config) -> bool:
        return True

    def configure(self, context) -> None:
        pass

    def prepare(self, context) -> None:
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.name!r})"


class PreparerRegistry:

    def __init__(self):
        self._preparers: List[Preparer] = []

    def register(self, preparer: Preparer) -> Preparer:
        self._preparers.append(preparer)
        return preparer

    def __iter__(self) -> Iterator[Preparer]:
        return iter(list(self._preparers))

    def __len__(self) -> int:
        return len(self._preparers)


def run_preparers(context) -> List[Preparer]:
    """
    Runs all preparers accepting the config and returns them.
    Returns only after every prepare() call finished. A FatalConfigurationError
    raised by any preparer is re-raised once all of them are done.
    """
    accepted = []
    for preparer in context.preparers:
        if preparer.is_config_acceptable(context.config):
            accepted.append(preparer)
        else:
            logger.info(f"Skipping '{preparer.name}' as it does not accept the configuration.")

    for preparer in accepted:
        logger.debug(f"Configuring '{preparer.name}'")
        preparer.configure(context)

    if not accepted:
        return accepted

    fatal: List[FatalConfigurationError] = []
    with ThreadPoolExecutor(max_workers=len(accepted), thread_name_prefix="preparer") as pool:
        futures = {pool.submit(preparer.prepare, context): preparer for preparer in accepted}
        done, _ = wait(futures)

    for future in done:
        preparer = futures[future]
        try:
            future.result()
        except FatalConfigurationError as e:
            logger.error(f"'{preparer.name}' rejected the configuration: {e}")
            fatal.append(e)
        except Exception:
            logger.exception(f"'{preparer.name}' failed to prepare the environment.")

    if fatal:
        raise fatal[0]

    logger.info(f"Environment prepared by {len(accepted)} of {len(context.preparers)} preparers.")
    return accepted
