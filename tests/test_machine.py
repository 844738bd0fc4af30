import logging
import pytest
from bootloader_definitions import Bootloader, WorkerFunction, SEED_KEY_ACCEPTED
from sciboot.chip import flash_chip_by_index
from sciboot.machine import start, step, INDETERMINATE_MESSAGE, NO_RESPONSE_MESSAGE
from sciboot.packet import Packet, Bus, Command, SettingsMode, ResponseMode, DebugMode, MsgTxMode
from sciboot.scheduler import Timer
from sciboot.session import (
	SessionConfig, Operation, Task, Success, Aborted, Cancelled,
	TimerExpired, PacketReceived, TransmitConfirmed, CancelRequested, OperatorAcknowledged, Fault,
	Send, ArmTimer, CancelTimer, TruncateFile, AppendFile, Status, Progress, OperatorPrompt, BusSpeed, Finished
)
from sciboot.transfer import FLASH, EEPROM, read_request, write_request, request_packet
from sciboot.worker import upload_packet, start_packet, exit_packet

IMAGE = bytes(range(256)) * 512 # 128k

def sci (*data):
	return PacketReceived(Packet(Bus.PCM, Command.MSG_RX, 0x00, bytes(4) + bytes(data)))

def usb (command, mode, *payload):
	return PacketReceived(Packet(Bus.USB, command, mode.value, bytes(payload)))

def voltages (battery=12000, bootstrap=12000, programming=20000):
	payload = b''.join([x.to_bytes(2, 'big') for x in (battery, bootstrap, programming)])
	return PacketReceived(Packet(Bus.USB, Command.RESPONSE, ResponseMode.ALL_VOLTS.value, payload))

def answer (request, data=b''):
	''' Block response as the worker sends it: request header echoed, opcode + 1 '''
	payload = request.payload
	return sci(*(bytes([payload[0] + 1]) + payload[1:] + data))

UPLOAD_OK = usb(Command.DEBUG, DebugMode.UPLOAD_WORKER_FUNCTION, 0x00)
VBB_REMOVED = usb(Command.SETTINGS, SettingsMode.SET_PROG_VOLT, 0x00)
WORKER_STARTED = sci(0x21)
WORKER_EXITED = sci(0x22)

def tick (state):
	return step(state, TimerExpired(Timer.NEXT_REQUEST, state.request_id))

def rx_timeout (state):
	return step(state, TimerExpired(Timer.RX_TIMEOUT, state.request_id))

def sent (effects):
	return [x.packet for x in effects if isinstance(x, Send)]

def messages (effects):
	return [x.message for x in effects if isinstance(x, Status)]

def finished (effects):
	return [x.outcome for x in effects if isinstance(x, Finished)]

def write_flash_config (**kwargs):
	options = dict(
		operation=Operation.WRITE_FLASH,
		flash_chip=flash_chip_by_index(3),
		flash_image=IMAGE,
		flash_output='flash.bin',
		eeprom_output='eeprom.bin',
	)
	options.update(kwargs)
	return SessionConfig(**options)

def enter_block_worker (config):
	state, _ = start(config)
	state, _ = tick(state)
	state, _ = step(state, UPLOAD_OK)
	state, _ = step(state, WORKER_STARTED)
	return tick(state)

def to_erase_upload ():
	''' Write session without backups, driven up to the erase routine being uploaded '''
	state, _ = start(write_flash_config(backup_flash=False, backup_eeprom=False))
	state, _ = tick(state)
	state, _ = step(state, voltages())
	state, _ = tick(state)
	state, _ = step(state, UPLOAD_OK)
	state, _ = step(state, sci(0x21, *([0xFF] * 29)))
	assert state.task == Task.ERASE_FLASH_MEMORY
	state, effects = tick(state)
	assert sent(effects) == [upload_packet(WorkerFunction.FLASH_ERASE, 3)]
	assert not state.destructive
	return state

def to_erase ():
	state, effects = step(to_erase_upload(), UPLOAD_OK)
	assert state.destructive
	assert sent(effects) == [start_packet(WorkerFunction.FLASH_ERASE, 3)]
	return state

class TestStart:
	def test_first_tick_is_scheduled_right_away (self):
		state, effects = start(write_flash_config())
		assert state.task == Task.CHECK_VOLTAGES
		assert state.request_id == 1
		assert effects[-1] == ArmTimer(Timer.NEXT_REQUEST, 0, 1)
		assert messages(effects) == ['Start flash memory writing session.']

	@pytest.mark.parametrize('config, task', [
		(SessionConfig(Operation.BOOTSTRAP), Task.INIT_BOOTSTRAP_MODE),
		(SessionConfig(Operation.READ_FLASH, flash_output='f.bin'), Task.DETECT_FLASH_MEMORY_TYPE),
		(SessionConfig(Operation.READ_FLASH, bootloader=Bootloader.JTEC, flash_output='f.bin'), Task.READ_FLASH_MEMORY),
		(SessionConfig(Operation.READ_EEPROM, eeprom_output='e.bin'), Task.READ_EEPROM),
		(SessionConfig(Operation.WRITE_EEPROM, eeprom_image=bytes(512)), Task.WRITE_EEPROM),
	])
	def test_initial_task (self, config, task):
		state, _ = start(config)
		assert state.task == task

	def test_finished_state_ignores_events (self):
		state, _ = start(write_flash_config())
		state, _ = step(state, CancelRequested())
		assert not state.active
		assert step(state, WORKER_EXITED) == (state, ())
		assert step(state, TimerExpired(Timer.NEXT_REQUEST, state.request_id)) == (state, ())

class TestVoltageGate:
	def test_nominal_voltages_move_on_to_part_number (self):
		state, _ = start(write_flash_config())
		state, effects = tick(state)
		assert sent(effects) == [Packet(Bus.USB, Command.REQUEST, 0x06)]
		assert 'Step 1. Check voltages.' in messages(effects)

		state, effects = step(state, voltages())
		assert 'Battery voltage: 12.000 V' in messages(effects)
		assert 'Programming voltage: 20.000 V' in messages(effects)
		assert 'All voltages are nominal.' in messages(effects)
		assert state.task == Task.READ_PART_NUMBER
		assert not state.awaiting
		assert CancelTimer(Timer.RX_TIMEOUT) in effects
		assert ArmTimer(Timer.NEXT_REQUEST, 25, state.request_id) in effects

	@pytest.mark.parametrize('readings, reason', [
		((11000, 12000, 20000), 'Battery voltage must be above 11.5V.'),
		((12000, 11000, 20000), 'Bootstrap voltage must be above 11.5V.'),
		((12000, 12000, 19000), 'Programming voltage must be above 19.5V.'),
	])
	def test_low_voltage_aborts (self, readings, reason):
		state, _ = start(write_flash_config())
		state, _ = tick(state)
		state, effects = step(state, voltages(*readings))
		assert finished(effects) == [Aborted(reason)]
		assert sent(effects) == []
		assert not state.active

	def test_short_voltage_response_is_ignored (self):
		state, _ = start(write_flash_config())
		state, _ = tick(state)
		packet = PacketReceived(Packet(Bus.USB, Command.RESPONSE, ResponseMode.ALL_VOLTS.value, b'\x2e\xe0'))
		assert step(state, packet) == (state, ())

	def test_jtec_plus_skips_part_number (self):
		config = write_flash_config(bootloader=Bootloader.JTECPLUS_256K, flash_chip=None, flash_image=bytes(262144))
		state, _ = start(config)
		state, _ = tick(state)
		state, effects = step(state, voltages())
		assert 'Skip part number read.' in messages(effects)
		assert state.task == Task.DETECT_FLASH_MEMORY_TYPE

	def test_jtec_uses_fixed_flash_chip (self):
		config = write_flash_config(bootloader=Bootloader.JTEC, flash_chip=None, flash_image=bytes(262144))
		state, _ = start(config)
		assert state.flash_chip.index == 8
		state, _ = tick(state)
		state, effects = step(state, voltages())
		assert 'Step 3. Detect flash memory type.' in messages(effects)
		assert 'Use selected flash chip.' in messages(effects)
		assert state.task == Task.BACKUP_FLASH_MEMORY

class TestRetries:
	def test_tenth_receive_timeout_aborts (self):
		state, _ = start(write_flash_config())
		state, effects = tick(state)
		request = sent(effects)

		for retry in range(1, 10):
			state, effects = rx_timeout(state)
			assert sent(effects) == request
			assert state.rx_retries == retry
			assert state.active

		state, effects = rx_timeout(state)
		assert finished(effects) == [Aborted(NO_RESPONSE_MESSAGE)]
		assert not state.active

	def test_answer_resets_retry_counter (self):
		state, _ = start(write_flash_config())
		state, _ = tick(state)
		for _ in range(3):
			state, _ = rx_timeout(state)
		assert state.rx_retries == 3
		state, _ = step(state, voltages())
		assert state.rx_retries == 0

	def test_expired_timer_of_an_older_request_is_dropped (self):
		state, _ = start(write_flash_config())
		state, _ = tick(state)
		assert step(state, TimerExpired(Timer.RX_TIMEOUT, state.request_id - 1)) == (state, ())
		# a tick while a request is outstanding must not send another one
		assert step(state, TimerExpired(Timer.NEXT_REQUEST, state.request_id)) == (state, ())

	def test_transmit_timeout_resends (self):
		state, _ = start(write_flash_config(confirms_transmit=True))
		state, effects = tick(state)
		request = sent(effects)
		assert ArmTimer(Timer.TX_TIMEOUT, 2000, state.request_id) in effects

		state, effects = step(state, TimerExpired(Timer.TX_TIMEOUT, state.request_id))
		assert sent(effects) == request
		assert state.tx_retries == 1

	def test_transmit_confirmation_stops_transmit_timer (self):
		state, _ = start(write_flash_config(confirms_transmit=True))
		state, _ = tick(state)
		assert step(state, TransmitConfirmed()) == (state, (CancelTimer(Timer.TX_TIMEOUT),))

class TestWorkerFunctions:
	def test_part_number_is_reported (self):
		state, _ = start(write_flash_config())
		state, _ = tick(state)
		state, _ = step(state, voltages())
		state, effects = tick(state)
		assert sent(effects) == [upload_packet(WorkerFunction.PART_NUMBER_READ, 3)]

		state, effects = step(state, UPLOAD_OK)
		assert sent(effects) == [start_packet(WorkerFunction.PART_NUMBER_READ, 3)]

		state, effects = step(state, sci(0x21, 0x56, 0x04, 0x41, 0x23, ord('A'), ord('B'), *([0xFF] * 23)))
		assert 'Part number: 56044123AB.' in messages(effects)
		assert state.part_number == '56044123AB'
		assert state.task == Task.BACKUP_FLASH_MEMORY

	def test_upload_failure_aborts (self):
		state, _ = start(SessionConfig(Operation.READ_EEPROM, eeprom_output='e.bin'))
		state, _ = tick(state)
		state, effects = step(state, usb(Command.DEBUG, DebugMode.UPLOAD_WORKER_FUNCTION, 0x02))
		assert finished(effects) == [Aborted('Worker function status: upload interrupted.')]

	def test_unknown_upload_result_aborts (self):
		state, _ = start(SessionConfig(Operation.READ_EEPROM, eeprom_output='e.bin'))
		state, _ = tick(state)
		state, effects = step(state, usb(Command.DEBUG, DebugMode.UPLOAD_WORKER_FUNCTION, 0x07))
		assert finished(effects) == [Aborted('Worker function status: unknown.')]

	def test_start_answer_without_request_is_ignored (self):
		state, _ = start(SessionConfig(Operation.READ_EEPROM, eeprom_output='e.bin'))
		state, _ = tick(state)
		assert step(state, WORKER_STARTED) == (state, ())

class TestFlashDetection:
	def detect (self):
		state, _ = start(SessionConfig(Operation.READ_FLASH, flash_output='flash.bin'))
		state, effects = tick(state)
		assert 'Detect flash memory type.' in messages(effects)
		assert sent(effects) == [upload_packet(WorkerFunction.FLASH_ID, 0)]
		state, _ = step(state, UPLOAD_OK)
		return state

	def test_known_chip_is_selected (self):
		state = self.detect()
		state, effects = step(state, sci(0x21, 0x89, 0xB4))
		assert state.flash_chip == flash_chip_by_index(3)
		assert state.flash_chip.size_bytes == 131072
		assert 'Flash memory: Intel N28F010 (128 kB).' in messages(effects)
		assert state.task == Task.DETECT_FLASH_MEMORY_TYPE

		state, effects = step(state, VBB_REMOVED)
		assert 'VBB/VPP removed from SCI-RX pin.' in messages(effects)
		assert state.task == Task.READ_FLASH_MEMORY

		state, effects = tick(state)
		assert TruncateFile('flash.bin') in effects
		assert Progress(WorkerFunction.FLASH_READ, 0, 131072) in effects
		assert sent(effects) == [upload_packet(WorkerFunction.FLASH_READ, 3)]

	def test_unknown_chip_aborts (self):
		state = self.detect()
		state, effects = step(state, sci(0x21, 0x89, 0x00))
		assert 'Result: 89 00.' in messages(effects)
		assert finished(effects) == [Aborted('Flash memory type could not be determined.')]

	def test_short_answer_is_ignored (self):
		state = self.detect()
		assert step(state, sci(0x21, 0x89)) == (state, ())

class TestErase:
	def test_erase_error_in_start_answer_aborts (self):
		state = to_erase()
		state, effects = step(state, sci(0x21, 0x82))
		assert finished(effects) == [Aborted('Flash erase error 0x82.', True)]
		assert INDETERMINATE_MESSAGE in messages(effects)
		assert sent(effects) == []

	@pytest.mark.parametrize('error', [0x81, 0x82, 0x83])
	def test_erase_error_byte_aborts (self, error):
		state = to_erase()
		state, effects = step(state, sci(error))
		assert finished(effects) == [Aborted('Flash erase error 0x{:02X}.'.format(error), True)]

	def test_erase_success_moves_on_to_write (self):
		state = to_erase()
		state, effects = step(state, usb(Command.SETTINGS, SettingsMode.SET_PROG_VOLT, 0x40))
		assert 'Apply VPP (20V) to SCI-RX pin.' in messages(effects)
		state, effects = step(state, sci(0x21, 0x22))
		assert 'Flash erased successfully.' in messages(effects)
		assert state.erase_ok
		assert state.task == Task.ERASE_FLASH_MEMORY

		state, _ = step(state, VBB_REMOVED)
		assert state.task == Task.WRITE_FLASH_MEMORY

	def test_erase_exit_moves_on_to_write (self):
		state = to_erase()
		state, _ = step(state, WORKER_EXITED)
		assert state.task == Task.WRITE_FLASH_MEMORY

	def test_programming_voltage_dropped_before_erase_confirmed (self):
		state = to_erase()
		state, effects = step(state, VBB_REMOVED)
		assert finished(effects) == [Aborted('Flash memory erase failed.', True)]

	def test_rejected_erase_upload_leaves_flash_intact (self):
		state = to_erase_upload()
		state, effects = step(state, usb(Command.DEBUG, DebugMode.UPLOAD_WORKER_FUNCTION, 0x01))
		assert finished(effects) == [Aborted('Worker function status: no response to ping.')]
		assert INDETERMINATE_MESSAGE not in messages(effects)

class TestFlashWrite:
	def test_whole_write_session (self):
		state = to_erase()
		state, _ = step(state, sci(0x21, 0x22))
		state, _ = step(state, VBB_REMOVED)

		state, effects = tick(state)
		assert 'Step 7. Write flash memory.' in messages(effects)
		assert Progress(WorkerFunction.FLASH_WRITE, 0, 131072) in effects
		assert not [x for x in effects if isinstance(x, TruncateFile)]
		state, _ = step(state, UPLOAD_OK)
		state, effects = step(state, WORKER_STARTED)
		assert 'Start flash writing.' in messages(effects)

		state, effects = tick(state)
		blocks = 0
		for offset in range(0, len(IMAGE), 512):
			request, = sent(effects)
			assert request == request_packet(write_request(FLASH, offset, IMAGE), vpp=True)
			assert request.mode == MsgTxMode.SINGLE_VPP.value
			blocks += 1
			state, effects = step(state, answer(request))
			if state.cursor < state.total:
				state, effects = tick(state)

		assert blocks == 256
		assert state.cursor == 131072
		assert Progress(WorkerFunction.FLASH_WRITE, 131072, 131072) in effects
		assert sent(effects) == [exit_packet(WorkerFunction.FLASH_WRITE, 3)]

		state, effects = step(state, WORKER_EXITED)
		assert 'Exit flash writing.' in messages(effects)
		assert state.task == Task.VERIFY_FLASH_CHECKSUM

		state, effects = tick(state)
		assert 'Step 8. Verify flash checksum.' in messages(effects)
		state, _ = step(state, UPLOAD_OK)
		state, effects = step(state, WORKER_STARTED)
		assert 'Skip flash checksum verification.' in messages(effects)
		assert state.task == Task.UPDATE_EEPROM

		state, effects = tick(state)
		assert 'Step 9. Update EEPROM.' in messages(effects)
		assert sent(effects) == [upload_packet(WorkerFunction.EEPROM_WRITE, 3)]
		state, _ = step(state, UPLOAD_OK)
		state, effects = step(state, WORKER_STARTED)
		assert 'Skip EEPROM update.' in messages(effects)
		state, effects = tick(state)
		assert sent(effects) == [exit_packet(WorkerFunction.EEPROM_WRITE, 3)]
		state, _ = step(state, WORKER_EXITED)
		assert state.task == Task.FINISH_FLASH_WRITE

		state, effects = tick(state)
		assert finished(effects) == [Success(Task.FINISH_FLASH_WRITE, True)]
		assert 'Turn key to OFF/LOCKED position.' in messages(effects)
		assert not state.active

	def test_image_size_must_match_detected_chip (self):
		config = write_flash_config(flash_chip=None, flash_image=bytes(262144))
		state, _ = start(config)
		state, _ = tick(state)
		state, _ = step(state, voltages())
		state, _ = tick(state)
		state, _ = step(state, UPLOAD_OK)
		state, _ = step(state, sci(0x21, *([0xFF] * 29)))
		assert state.task == Task.DETECT_FLASH_MEMORY_TYPE
		state, _ = tick(state)
		state, _ = step(state, UPLOAD_OK)
		state, _ = step(state, sci(0x21, 0x89, 0xB4))
		state, effects = step(state, VBB_REMOVED)
		assert finished(effects) == [Aborted('Flash file size (262144 bytes) must be equal to the flash memory chip size (131072 bytes)!')]

class TestEEPROM:
	def test_read_session (self):
		config = SessionConfig(Operation.READ_EEPROM, eeprom_output='eeprom.bin')
		state, _ = start(config)
		state, effects = tick(state)
		assert TruncateFile('eeprom.bin') in effects
		assert sent(effects) == [upload_packet(WorkerFunction.EEPROM_READ, 0)]
		state, effects = step(state, UPLOAD_OK)
		assert sent(effects) == [start_packet(WorkerFunction.EEPROM_READ, 0)]
		state, effects = step(state, WORKER_STARTED)
		assert 'Start EEPROM reading.' in messages(effects)
		assert state.worker_running

		state, effects = tick(state)
		request, = sent(effects)
		assert request == Packet(Bus.PCM, Command.MSG_TX, MsgTxMode.SINGLE.value, bytes([0x39, 0x00, 0x00, 0x02, 0x00]))
		assert request.payload == read_request(EEPROM, 0)

		data = bytes(range(256)) * 2
		state, effects = step(state, answer(request, data))
		assert AppendFile('eeprom.bin', data) in effects
		assert Status('EEPROM block read. offset: 00 00. Size: 02 00.', logging.DEBUG) in effects
		assert state.cursor == 512
		assert sent(effects) == [exit_packet(WorkerFunction.EEPROM_READ, 0)]

		state, effects = step(state, WORKER_EXITED)
		assert 'Exit EEPROM reading.' in messages(effects)
		assert state.task == Task.FINISH_EEPROM_READ

		state, effects = tick(state)
		assert finished(effects) == [Success(Task.FINISH_EEPROM_READ)]
		assert 'EEPROM reading session finished successfully.' in messages(effects)

	def test_stale_answer_is_ignored (self):
		image = bytes(range(256)) * 2
		state, effects = enter_block_worker(SessionConfig(Operation.WRITE_EEPROM, eeprom_image=image))
		request, = sent(effects)
		assert request.payload == bytes([0x36, 0x00, 0x00, 0x02, 0x00]) + image
		assert state.destructive

		# well formed, but for offset 0x0100
		assert step(state, sci(0x37, 0x01, 0x00, 0x02, 0x00, *image)) == (state, ())

		state, effects = step(state, answer(request))
		assert state.cursor == 512
		assert sent(effects) == [exit_packet(WorkerFunction.EEPROM_WRITE, 0)]

		# the same answer again doesn't move anything
		assert step(state, answer(request)) == (state, ())

	def test_failed_write_aborts_and_exits_worker (self):
		state, _ = enter_block_worker(SessionConfig(Operation.WRITE_EEPROM, eeprom_image=bytes(512)))
		state, effects = step(state, sci(0x37, 0x00, 0x00, 0x02, 0x00, 0x80))
		assert finished(effects) == [Aborted('EEPROM block write error: Invalid block size.', True)]
		assert sent(effects) == [exit_packet(WorkerFunction.EEPROM_WRITE, 0)]
		assert INDETERMINATE_MESSAGE in messages(effects)

	@pytest.mark.parametrize('error, reason', [
		(0x80, 'EEPROM block size error.'),
		(0x84, 'EEPROM offset error.'),
	])
	def test_error_bytes (self, error, reason):
		state, _ = enter_block_worker(SessionConfig(Operation.READ_EEPROM, eeprom_output='e.bin'))
		state, effects = step(state, sci(error))
		assert finished(effects) == [Aborted(reason)]

class TestCancel:
	def test_cancel_exits_running_worker (self):
		state, _ = enter_block_worker(SessionConfig(Operation.READ_EEPROM, eeprom_output='e.bin'))
		state, effects = step(state, CancelRequested())
		assert finished(effects) == [Cancelled(False)]
		assert sent(effects) == [exit_packet(WorkerFunction.EEPROM_READ, 0)]
		assert 'Current task is cancelled.' in messages(effects)
		for timer in Timer:
			assert CancelTimer(timer) in effects
		assert not state.active

	def test_cancel_during_write_is_indeterminate (self):
		state, _ = enter_block_worker(SessionConfig(Operation.WRITE_EEPROM, eeprom_image=bytes(512)))
		state, effects = step(state, CancelRequested())
		assert finished(effects) == [Cancelled(True)]
		assert INDETERMINATE_MESSAGE in messages(effects)

	def test_fault_aborts (self):
		state, _ = enter_block_worker(SessionConfig(Operation.READ_EEPROM, eeprom_output='e.bin'))
		state, effects = step(state, Fault('Unable to write e.bin: disk full'))
		assert finished(effects) == [Aborted('Unable to write e.bin: disk full')]

class TestBootstrap:
	def prompt (self):
		state, _ = start(SessionConfig(Operation.BOOTSTRAP))
		state, effects = tick(state)
		assert OperatorPrompt('Turn key to OFF/LOCKED position. Wait at least 10 seconds.') in effects
		assert state.awaiting_operator
		return state

	def initialize (self):
		state = self.prompt()
		state, effects = step(state, OperatorAcknowledged(True))
		assert 'Scanner SCI-bus speed is set to 62500 baud.' in messages(effects)
		assert effects.index(BusSpeed(True)) < effects.index(Send(sent(effects)[0]))
		assert sent(effects) == [Packet(Bus.USB, Command.SETTINGS, SettingsMode.SET_PROG_VOLT.value, b'\x80')]
		assert OperatorPrompt('Turn key to RUN position. Do not start the engine.') in effects

		state, effects = step(state, OperatorAcknowledged(True))
		assert sent(effects) == [
			Packet(Bus.USB, Command.SETTINGS, SettingsMode.SET_PROG_VOLT.value, b'\x00'),
			Packet(Bus.USB, Command.DEBUG, DebugMode.INIT_BOOTSTRAP_MODE.value, bytes([0x03, 0x00])),
		]
		assert 'Bootloader: SBEC3A/3A+/3B (256k).' in messages(effects)
		return state

	def test_timers_wait_for_the_operator (self):
		state = self.prompt()
		assert step(state, TimerExpired(Timer.RX_TIMEOUT, state.request_id)) == (state, ())

	def test_bootstrap_session (self):
		state = self.initialize()

		state, effects = step(state, sci(*SEED_KEY_ACCEPTED))
		assert messages(effects) == ['Unlock bootstrap mode security. OK.']
		state, effects = step(state, sci(0x4C, 0x01, 0x00, 0x01, 0x0F, *bytes(16)))
		assert messages(effects) == ['Upload bootloader: SBEC3A/3A+/3B (256k). OK.']
		state, effects = step(state, sci(0x47, 0x80, 0x00, 0x22))
		assert messages(effects) == ['Start bootloader. OK.']

		state, effects = step(state, usb(Command.DEBUG, DebugMode.INIT_BOOTSTRAP_MODE, 0x00))
		assert 'Bootstrap mode initialized successfully.' in messages(effects)
		assert state.task == Task.FINISH_BOOTSTRAP

		state, effects = tick(state)
		assert finished(effects) == [Success(Task.FINISH_BOOTSTRAP)]
		assert 'ECU bootstrapping finished successfully.' in messages(effects)

	def test_failed_start_bootloader_is_reported (self):
		state = self.initialize()
		state, effects = step(state, sci(0x47, 0x80, 0x00))
		assert messages(effects) == ['Start bootloader. Error.']

	def test_operator_declines (self):
		state = self.prompt()
		state, effects = step(state, OperatorAcknowledged(False))
		# nothing applied yet
		assert sent(effects) == []
		assert BusSpeed(False) not in effects
		assert 'ECU bootstrapping is cancelled.' in messages(effects)
		assert finished(effects) == [Cancelled()]

	def test_operator_declines_second_prompt (self):
		state = self.prompt()
		state, _ = step(state, OperatorAcknowledged(True))
		state, effects = step(state, OperatorAcknowledged(False))
		assert sent(effects) == [Packet(Bus.USB, Command.SETTINGS, SettingsMode.SET_PROG_VOLT.value, b'\x00')]
		assert BusSpeed(False) in effects
		assert finished(effects) == [Cancelled()]

	def test_cancel_between_prompts_removes_vbb (self):
		state = self.prompt()
		state, _ = step(state, OperatorAcknowledged(True))
		state, effects = step(state, CancelRequested())
		assert sent(effects) == [Packet(Bus.USB, Command.SETTINGS, SettingsMode.SET_PROG_VOLT.value, b'\x00')]
		assert 'Scanner SCI-bus speed is set to 7812.5 baud.' in messages(effects)
		assert BusSpeed(False) in effects
		assert finished(effects) == [Cancelled()]

	def test_security_key_rejected (self):
		state = self.initialize()
		state, effects = step(state, usb(Command.DEBUG, DebugMode.INIT_BOOTSTRAP_MODE, 0x06))
		assert finished(effects) == [Aborted('Bootstrap status: security key not accepted.')]

	def test_timeout_is_not_retried (self):
		state = self.initialize()
		state, effects = rx_timeout(state)
		assert finished(effects) == [Aborted(NO_RESPONSE_MESSAGE)]
		assert sent(effects) == []
