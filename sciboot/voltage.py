from dataclasses import dataclass
from typing import List, Optional
from bootloader_definitions import MIN_BATTERY_VOLTS, MIN_BOOTSTRAP_VOLTS, MIN_PROGRAMMING_VOLTS

@dataclass(frozen=True)
class Voltages:
	battery: float
	bootstrap: float
	programming: float

	def describe (self) -> List[str]:
		return [
			'Battery voltage: {:.3f} V'.format(self.battery),
			'Bootstrap voltage: {:.3f} V'.format(self.bootstrap),
			'Programming voltage: {:.3f} V'.format(self.programming),
		]

def parse_voltages (payload: bytes) -> Optional[Voltages]:
	'''
	Three big endian millivolt readings: battery, bootstrap rail (VBB), programming rail (VPP)
	'''
	if len(payload) < 6:
		return None
	battery, bootstrap, programming = [int.from_bytes(payload[x:x+2], 'big') / 1000 for x in (0, 2, 4)]
	return Voltages(battery, bootstrap, programming)

def check_voltages (voltages: Voltages) -> List[str]:
	violations = []
	if voltages.battery < MIN_BATTERY_VOLTS:
		violations.append('Battery voltage must be above {:.1f}V.'.format(MIN_BATTERY_VOLTS))
	if voltages.bootstrap < MIN_BOOTSTRAP_VOLTS:
		violations.append('Bootstrap voltage must be above {:.1f}V.'.format(MIN_BOOTSTRAP_VOLTS))
	if voltages.programming < MIN_PROGRAMMING_VOLTS:
		violations.append('Programming voltage must be above {:.1f}V.'.format(MIN_PROGRAMMING_VOLTS))
	return violations
