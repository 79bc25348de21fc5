"""
Lock verifier
Detects locks still attributed to this host after maintenance finished.
On object-locked storage such a lock cannot be removed and blocks the
repository until the retention period lapses
"""
import logging
from typing import List, Optional

from models.errors import ResticflowError, StaleLockError
from models.repository import LockVerificationResult
from services.console import ConsoleReporter

logger = logging.getLogger(__name__)


class LockVerifier:
    """Classifies repository locks into own-host and other-host sets"""

    def __init__(self, hostname: str, reporter: Optional[ConsoleReporter] = None):
        self.hostname = hostname
        self.reporter = reporter or ConsoleReporter()

    def verify(self, engine) -> LockVerificationResult:
        """Locks on one repository split by owner host"""
        return engine.verify_no_stale_locks(self.hostname)

    def verify_all(self, engines: List) -> List[StaleLockError]:
        """Check every repository; lock listing failures only warn"""
        stale = []
        for engine in engines:
            try:
                result = self.verify(engine)
            except ResticflowError as e:
                self.reporter.warning(f"Could not verify locks on {engine.name}: {e}")
                continue

            if result.has_own_locks:
                self.reporter.error(f"STALE LOCK DETECTED on {engine.name} repository!")
                self.reporter.error(
                    f"   This host ({self.hostname}) still has {len(result.own_host_locks)} lock(s) that should have been released"
                )
                for lock in result.own_host_locks:
                    self.reporter.error(f"   - Lock from PID {lock.pid} at {lock.time:%Y-%m-%d %H:%M:%S}")
                stale.append(StaleLockError(engine.name, self.hostname, len(result.own_host_locks)))
            else:
                self.reporter.success(f"No stale locks from this host on {engine.name}")

            if result.has_other_locks:
                self.reporter.info(
                    f"Note: {len(result.other_host_locks)} lock(s) from other hosts on {engine.name} (normal in multi-server setup)"
                )
                for lock in result.other_host_locks:
                    self.reporter.info(f"   - {lock.hostname} (PID {lock.pid}) at {lock.time:%H:%M:%S}")

        if stale:
            self.reporter.error("IMPORTANT: Stale locks were detected!")
            self.reporter.error("   On object-locked storage these locks cannot be removed and")
            self.reporter.error("   will block repository access until the retention period expires.")
        return stale
