import sys
from pathlib import Path
import pytest

# flat modules (bootloader_definitions, sciflasher) live at the repository root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sciboot.session import Timing

@pytest.fixture
def fast_timing ():
	''' Timings short enough for whole sessions against the virtual ECU '''
	return Timing(next_request_ms=1, rx_timeout_ms=50, rx_timeout_erase_ms=50, rx_timeout_eeprom_write_ms=50, tx_timeout_ms=50, bootstrap_timeout_ms=50, max_retries=9)

@pytest.fixture(autouse=True)
def _fresh_alive_progress_config ():
	''' alive_progress binds sys.stdout into its global config on first use; rebind per test so a closed capture stream is not reused '''
	from alive_progress import config_handler
	config_handler.reset()
	yield
