'''
Session state machine.

step(state, event) returns the next SessionState and a tuple of effects for the engine to carry out.
Nothing in here touches the transport, the filesystem or the clock.
'''
import logging
from collections import namedtuple
from bootloader_definitions import (
	WorkerFunction, BootloaderError, WorkerFunctionError, SciId,
	BOOTLOADER_NAMES, BOOTLOADER_ERROR_MESSAGES, WORKER_FUNCTION_ERROR_MESSAGES, BLOCK_WORKER_FUNCTIONS,
	ERASE_ERRORS, SEED_KEY_ACCEPTED, BOOTSTRAP_NOT_PROTECTED, EEPROM_SIZE_BYTES, is_jtec
)
from .chip import identify_flash_chip, default_flash_chip, FlashChipIdentificationException
from .packet import Packet, Bus, Command, SettingsMode, RequestMode, ResponseMode, DebugMode
from .scheduler import Timer
from .session import (
	Task, Operation, SessionState, Success, Aborted, Cancelled,
	TimerExpired, PacketReceived, TransmitConfirmed, CancelRequested, OperatorAcknowledged, Fault,
	Send, ArmTimer, CancelTimer, TruncateFile, AppendFile, Status, Progress, OperatorPrompt, BusSpeed, Finished,
	EXIT_ON_CANCEL_TASKS
)
from .transfer import FLASH, EEPROM, BlockStatus, read_request, write_request, request_packet, check_response, describe_block
from .voltage import parse_voltages, check_voltages
from .worker import upload_packet, start_packet, exit_packet, parse_part_number, parse_flash_id

logger = logging.getLogger(__name__)

INDETERMINATE_MESSAGE = 'ECU memory contents are indeterminate. Reprogram before key-on.'
NO_RESPONSE_MESSAGE = 'No response from the ECU.'

STEP_HEADLINES = {
	1: 'Check voltages.',
	2: 'Read part number.',
	3: 'Detect flash memory type.',
	4: 'Backup flash memory.',
	5: 'Backup EEPROM.',
	6: 'Erase flash memory.',
	7: 'Write flash memory.',
	8: 'Verify flash checksum.',
	9: 'Update EEPROM.',
}

SESSION_START_MESSAGES = {
	Operation.BOOTSTRAP: 'Start ECU bootstrapping.',
	Operation.READ_FLASH: 'Start flash memory reading session.',
	Operation.WRITE_FLASH: 'Start flash memory writing session.',
	Operation.READ_EEPROM: 'Start EEPROM reading session.',
	Operation.WRITE_EEPROM: 'Start EEPROM writing session.',
}

SESSION_FINISH_MESSAGES = {
	Task.FINISH_BOOTSTRAP: 'ECU bootstrapping finished successfully.',
	Task.FINISH_FLASH_READ: 'Flash memory reading session finished successfully.',
	Task.FINISH_FLASH_WRITE: 'Flash memory writing session finished successfully.',
	Task.FINISH_EEPROM_READ: 'EEPROM reading session finished successfully.',
	Task.FINISH_EEPROM_WRITE: 'EEPROM writing session finished successfully.',
}

WORKER_MESSAGES = {
	WorkerFunction.FLASH_READ: ('Start flash reading.', 'Exit flash reading.'),
	WorkerFunction.FLASH_WRITE: ('Start flash writing.', 'Exit flash writing.'),
	WorkerFunction.EEPROM_READ: ('Start EEPROM reading.', 'Exit EEPROM reading.'),
	WorkerFunction.EEPROM_WRITE: ('Start EEPROM writing.', 'Exit EEPROM writing.'),
}

BlockPhase = namedtuple('BlockPhase', ['worker', 'layout', 'write', 'step'])

BLOCK_PHASES = {
	Task.BACKUP_FLASH_MEMORY: BlockPhase(WorkerFunction.FLASH_READ, FLASH, False, 4),
	Task.READ_FLASH_MEMORY: BlockPhase(WorkerFunction.FLASH_READ, FLASH, False, None),
	Task.WRITE_FLASH_MEMORY: BlockPhase(WorkerFunction.FLASH_WRITE, FLASH, True, 7),
	Task.BACKUP_EEPROM: BlockPhase(WorkerFunction.EEPROM_READ, EEPROM, False, 5),
	Task.READ_EEPROM: BlockPhase(WorkerFunction.EEPROM_READ, EEPROM, False, None),
	Task.WRITE_EEPROM: BlockPhase(WorkerFunction.EEPROM_WRITE, EEPROM, True, None),
}

FLASH_TASKS = (Task.BACKUP_FLASH_MEMORY, Task.READ_FLASH_MEMORY, Task.WRITE_FLASH_MEMORY)
EEPROM_TASKS = (Task.BACKUP_EEPROM, Task.READ_EEPROM, Task.WRITE_EEPROM, Task.UPDATE_EEPROM)

# timer / request bookkeeping

def _request (state: SessionState, effects: list, *packets: Packet) -> SessionState:
	''' Send packets as one outstanding request and start waiting for the answer '''
	request_id = state.request_id + 1
	timing = state.config.timing
	for packet in packets:
		effects.append(Send(packet))
	effects.append(ArmTimer(Timer.RX_TIMEOUT, timing.rx_timeout_for(state.task), request_id))
	if state.config.confirms_transmit:
		effects.append(ArmTimer(Timer.TX_TIMEOUT, timing.tx_timeout_ms, request_id))
	return state.evolve(request_id=request_id, outstanding=tuple(packets), awaiting=True)

def _received (state: SessionState, effects: list) -> SessionState:
	effects.append(CancelTimer(Timer.RX_TIMEOUT))
	effects.append(CancelTimer(Timer.TX_TIMEOUT))
	return state.evolve(rx_retries=0, tx_retries=0, awaiting=False, outstanding=())

def _keep_waiting (state: SessionState, effects: list) -> SessionState:
	''' A partial answer arrived, the rest is still to come for the same request '''
	request_id = state.request_id + 1
	effects.append(CancelTimer(Timer.TX_TIMEOUT))
	effects.append(ArmTimer(Timer.RX_TIMEOUT, state.config.timing.rx_timeout_for(state.task), request_id))
	return state.evolve(request_id=request_id, rx_retries=0, tx_retries=0)

def _next (state: SessionState, effects: list) -> SessionState:
	state = _received(state, effects)
	request_id = state.request_id + 1
	effects.append(ArmTimer(Timer.NEXT_REQUEST, state.config.timing.next_request_ms, request_id))
	return state.evolve(request_id=request_id)

def _advance (state: SessionState, effects: list, task: Task) -> SessionState:
	return _next(state.evolve(task=task), effects)

def _is_outstanding (state: SessionState, mode: DebugMode) -> bool:
	if not state.awaiting or not state.outstanding:
		return False
	return state.outstanding[0].is_a(Bus.USB, Command.DEBUG, mode)

def _headline (state: SessionState, effects: list, step: int, skip: str = None):
	title = STEP_HEADLINES[step]
	if state.config.operation == Operation.WRITE_FLASH:
		title = 'Step {}. {}'.format(step, title)
	effects.append(Status(title, blank_line=True))
	if skip:
		effects.append(Status(skip))

# session end

def _prog_volt_packet (value: int) -> Packet:
	return Packet(Bus.USB, Command.SETTINGS, SettingsMode.SET_PROG_VOLT.value, bytes([value]))

def _stop (state: SessionState, effects: list, outcome) -> SessionState:
	for timer in Timer:
		effects.append(CancelTimer(timer))
	if state.task in EXIT_ON_CANCEL_TASKS:
		effects.append(Send(exit_packet(state.worker, state.chip_index)))
	if state.task == Task.INIT_BOOTSTRAP_MODE and state.bootstrap_step == 1:
		# VBB stays on SCI-RX between the two key prompts
		effects.append(Send(_prog_volt_packet(0x00)))
		effects.append(Status('Scanner SCI-bus speed is set to 7812.5 baud.'))
		effects.append(BusSpeed(False))
	effects.append(Status('Current task is cancelled.', logging.WARNING, blank_line=True))
	if state.destructive:
		effects.append(Status(INDETERMINATE_MESSAGE, logging.ERROR))
	effects.append(Finished(outcome))
	return SessionState(finished=True, outcome=outcome)

def _abort (state: SessionState, effects: list, reason: str) -> SessionState:
	effects.append(Status(reason, logging.ERROR))
	return _stop(state, effects, Aborted(reason, state.destructive))

def _finish (state: SessionState, effects: list) -> SessionState:
	task = state.task
	key_cycle_required = task in (Task.FINISH_FLASH_WRITE, Task.FINISH_EEPROM_WRITE)
	for timer in Timer:
		effects.append(CancelTimer(timer))
	effects.append(Status(SESSION_FINISH_MESSAGES[task], blank_line=True))
	if key_cycle_required:
		effects.append(Status('Turn key to OFF/LOCKED position.', blank_line=True))
		effects.append(Status('Wait for 5 seconds before starting the engine.'))
	outcome = Success(task, key_cycle_required)
	effects.append(Finished(outcome))
	return SessionState(finished=True, outcome=outcome)

# worker function switching

def _upload (state: SessionState, effects: list, worker: WorkerFunction) -> SessionState:
	state = state.evolve(worker=worker, worker_running=False)
	return _request(state, effects, upload_packet(worker, state.chip_index))

def _enter_worker (state: SessionState, effects: list, worker: WorkerFunction) -> SessionState:
	# block workers keep running until exited, only one may live in the ECU
	if state.worker_running and state.worker in BLOCK_WORKER_FUNCTIONS and state.worker != worker:
		state = state.evolve(pending_worker=worker)
		return _request(state, effects, exit_packet(state.worker, state.chip_index))
	return _upload(state, effects, worker)

# routing between phases

def _after_detect (state: SessionState, effects: list) -> SessionState:
	config = state.config
	if config.operation == Operation.READ_FLASH:
		return _advance(state, effects, Task.READ_FLASH_MEMORY)

	if config.flash_image and len(config.flash_image) != state.flash_chip.size_bytes:
		return _abort(state, effects, 'Flash file size ({} bytes) must be equal to the flash memory chip size ({} bytes)!'.format(len(config.flash_image), state.flash_chip.size_bytes))

	if config.backup_flash:
		return _advance(state, effects, Task.BACKUP_FLASH_MEMORY)
	_headline(state, effects, 4, 'Skip flash memory backup.')
	return _after_flash_backup(state, effects)

def _after_flash_backup (state: SessionState, effects: list) -> SessionState:
	if state.config.backup_eeprom and not is_jtec(state.config.bootloader):
		return _advance(state, effects, Task.BACKUP_EEPROM)
	_headline(state, effects, 5, 'Skip EEPROM backup.')
	return _advance(state, effects, Task.ERASE_FLASH_MEMORY)

def _after_part_number (state: SessionState, effects: list) -> SessionState:
	if state.flash_chip is None:
		return _advance(state, effects, Task.DETECT_FLASH_MEMORY_TYPE)
	_headline(state, effects, 3, 'Use selected flash chip.')
	return _after_detect(state, effects)

def _after_flash_write (state: SessionState, effects: list) -> SessionState:
	if is_jtec(state.config.bootloader):
		_headline(state, effects, 8, 'Skip flash checksum verification.')
		_headline(state, effects, 9, 'Skip EEPROM update.')
		return _advance(state, effects, Task.FINISH_FLASH_WRITE)
	return _advance(state, effects, Task.VERIFY_FLASH_CHECKSUM)

# ticks: each phase entry emits at most one request

def _tick_check_voltages (state, effects):
	_headline(state, effects, 1)
	return _request(state, effects, Packet(Bus.USB, Command.REQUEST, RequestMode.ALL_VOLTS.value))

def _tick_read_part_number (state, effects):
	_headline(state, effects, 2)
	return _enter_worker(state, effects, WorkerFunction.PART_NUMBER_READ)

def _tick_detect_flash_memory_type (state, effects):
	_headline(state, effects, 3)
	return _enter_worker(state, effects, WorkerFunction.FLASH_ID)

def _tick_erase_flash_memory (state, effects):
	_headline(state, effects, 6)
	state = state.evolve(erase_ok=False)
	return _enter_worker(state, effects, WorkerFunction.FLASH_ERASE)

def _tick_verify_flash_checksum (state, effects):
	_headline(state, effects, 8)
	return _enter_worker(state, effects, WorkerFunction.VERIFY_FLASH_CHECKSUM)

def _tick_update_eeprom (state, effects):
	if state.worker == WorkerFunction.EEPROM_WRITE and state.worker_running:
		return _request(state, effects, exit_packet(state.worker, state.chip_index))
	_headline(state, effects, 9)
	return _enter_worker(state, effects, WorkerFunction.EEPROM_WRITE)

def _tick_block (state, effects):
	phase = BLOCK_PHASES[state.task]
	config = state.config
	output = config.flash_output if phase.layout is FLASH else config.eeprom_output

	if state.worker != phase.worker or not state.worker_running:
		if phase.step and state.worker != phase.worker:
			_headline(state, effects, phase.step)
		total = state.flash_chip.size_bytes if phase.layout is FLASH else EEPROM_SIZE_BYTES
		if not phase.write:
			effects.append(TruncateFile(output))
		effects.append(Progress(phase.worker, 0, total))
		state = state.evolve(cursor=0, total=total)
		return _enter_worker(state, effects, phase.worker)

	if state.cursor >= state.total:
		return _request(state, effects, exit_packet(state.worker, state.chip_index))

	if phase.write:
		image = config.flash_image if phase.layout is FLASH else config.eeprom_image
		payload = write_request(phase.layout, state.cursor, image)
		state = state.evolve(destructive=True)
	else:
		payload = read_request(phase.layout, state.cursor)
	return _request(state, effects, request_packet(payload, vpp=phase.write and phase.layout is FLASH))

def _tick_init_bootstrap_mode (state, effects):
	effects.append(Status('Turn key to OFF/LOCKED position.', blank_line=True))
	effects.append(OperatorPrompt('Turn key to OFF/LOCKED position. Wait at least 10 seconds.'))
	return state.evolve(awaiting=True, awaiting_operator=True, bootstrap_step=0)

TICK_HANDLERS = {
	Task.CHECK_VOLTAGES: _tick_check_voltages,
	Task.READ_PART_NUMBER: _tick_read_part_number,
	Task.DETECT_FLASH_MEMORY_TYPE: _tick_detect_flash_memory_type,
	Task.BACKUP_FLASH_MEMORY: _tick_block,
	Task.READ_FLASH_MEMORY: _tick_block,
	Task.BACKUP_EEPROM: _tick_block,
	Task.ERASE_FLASH_MEMORY: _tick_erase_flash_memory,
	Task.WRITE_FLASH_MEMORY: _tick_block,
	Task.VERIFY_FLASH_CHECKSUM: _tick_verify_flash_checksum,
	Task.UPDATE_EEPROM: _tick_update_eeprom,
	Task.READ_EEPROM: _tick_block,
	Task.WRITE_EEPROM: _tick_block,
	Task.FINISH_FLASH_READ: _finish,
	Task.FINISH_FLASH_WRITE: _finish,
	Task.FINISH_EEPROM_READ: _finish,
	Task.FINISH_EEPROM_WRITE: _finish,
	Task.FINISH_BOOTSTRAP: _finish,
	Task.INIT_BOOTSTRAP_MODE: _tick_init_bootstrap_mode,
}

# worker function start responses

def _start_part_number (state, data, effects):
	part_number = parse_part_number(data)
	if part_number is None:
		effects.append(Status('Part number: unknown.'))
	else:
		effects.append(Status('Part number: {}.'.format(part_number)))
	state = _received(state.evolve(part_number=part_number), effects)
	return _after_part_number(state, effects)

def _start_flash_id (state, data, effects):
	flash_id = parse_flash_id(data)
	if flash_id is None:
		return state

	manufacturer_id, chip_id = flash_id
	try:
		chip = identify_flash_chip(manufacturer_id, chip_id)
	except FlashChipIdentificationException as e:
		logger.debug(e)
		effects.append(Status('Result: {}.'.format(bytes(data[1:3]).hex(' ').upper())))
		effects.append(Status('Consider selecting the correct chip by hand if issue persist.'))
		return _abort(state, effects, 'Flash memory type could not be determined.')

	effects.append(Status('Flash memory: {}.'.format(chip.describe())))
	# the scanner drops VBB/VPP once the ID routine is done, that notification moves on
	return _keep_waiting(state.evolve(flash_chip=chip), effects)

def _start_flash_erase (state, data, effects):
	effects.append(Status('Start flash erasing.'))
	if len(data) < 2:
		return _keep_waiting(state, effects)
	if data[1] == SciId.EXIT_WORKER_FUNCTION.value:
		effects.append(Status('Flash erased successfully.'))
		return _keep_waiting(state.evolve(erase_ok=True), effects)
	if data[1] in ERASE_ERRORS:
		return _abort(state, effects, 'Flash erase error 0x{:02X}.'.format(data[1]))
	return _keep_waiting(state, effects)

def _start_verify_flash_checksum (state, data, effects):
	effects.append(Status('Skip flash checksum verification.'))
	state = _received(state, effects)
	if is_jtec(state.config.bootloader):
		return _advance(state, effects, Task.FINISH_FLASH_WRITE)
	return _advance(state, effects, Task.UPDATE_EEPROM)

def _start_block (state, data, effects):
	effects.append(Status(WORKER_MESSAGES[state.worker][0]))
	if state.task == Task.UPDATE_EEPROM:
		effects.append(Status('Skip EEPROM update.'))
	return _next(state.evolve(worker_running=True), effects)

START_HANDLERS = {
	WorkerFunction.PART_NUMBER_READ: _start_part_number,
	WorkerFunction.FLASH_ID: _start_flash_id,
	WorkerFunction.FLASH_ERASE: _start_flash_erase,
	WorkerFunction.VERIFY_FLASH_CHECKSUM: _start_verify_flash_checksum,
	WorkerFunction.FLASH_READ: _start_block,
	WorkerFunction.FLASH_WRITE: _start_block,
	WorkerFunction.EEPROM_READ: _start_block,
	WorkerFunction.EEPROM_WRITE: _start_block,
}

# worker function exit responses

def _exit_flash_read (state, effects):
	if state.task == Task.BACKUP_FLASH_MEMORY:
		return _after_flash_backup(state, effects)
	return _advance(state, effects, Task.FINISH_FLASH_READ)

def _exit_flash_write (state, effects):
	return _after_flash_write(state, effects)

def _exit_eeprom_read (state, effects):
	if state.task == Task.BACKUP_EEPROM:
		return _advance(state, effects, Task.ERASE_FLASH_MEMORY)
	return _advance(state, effects, Task.FINISH_EEPROM_READ)

def _exit_eeprom_write (state, effects):
	if state.task == Task.UPDATE_EEPROM:
		return _advance(state, effects, Task.FINISH_FLASH_WRITE)
	return _advance(state, effects, Task.FINISH_EEPROM_WRITE)

EXIT_HANDLERS = {
	WorkerFunction.FLASH_READ: _exit_flash_read,
	WorkerFunction.FLASH_WRITE: _exit_flash_write,
	WorkerFunction.EEPROM_READ: _exit_eeprom_read,
	WorkerFunction.EEPROM_WRITE: _exit_eeprom_write,
}

# inbound traffic

def _on_start (state, data, effects):
	if not _is_outstanding(state, DebugMode.START_WORKER_FUNCTION):
		return state
	handler = START_HANDLERS.get(state.worker)
	if handler is None:
		return state
	return handler(state, data, effects)

def _on_exit (state, data, effects):
	# the erase routine reports completion with an exit of its own
	if state.task == Task.ERASE_FLASH_MEMORY and state.worker == WorkerFunction.FLASH_ERASE and _is_outstanding(state, DebugMode.START_WORKER_FUNCTION):
		effects.append(Status('Flash erased successfully.'))
		return _advance(state.evolve(erase_ok=True), effects, Task.WRITE_FLASH_MEMORY)

	if not _is_outstanding(state, DebugMode.EXIT_WORKER_FUNCTION):
		return state

	exited = state.worker
	if exited in WORKER_MESSAGES:
		effects.append(Status(WORKER_MESSAGES[exited][1]))
	state = _received(state.evolve(worker_running=False), effects)

	if state.pending_worker is not None:
		pending = state.pending_worker
		return _upload(state.evolve(pending_worker=None), effects, pending)

	handler = EXIT_HANDLERS.get(exited)
	if handler is None:
		return _next(state, effects)
	return handler(state, effects)

def _on_block (state, data, effects):
	phase = BLOCK_PHASES[state.task]
	if not state.worker_running or not state.awaiting or not state.outstanding:
		return state
	request = state.outstanding[0]
	if request.bus != Bus.PCM:
		return state

	layout = phase.layout
	expected = layout.write_response if phase.write else layout.read_response
	if data[0] != expected.value:
		return state

	block = check_response(layout, data, request.payload)
	if block.status in (BlockStatus.IGNORED, BlockStatus.STALE):
		return state
	verb = 'write' if phase.write else 'read'
	if block.status == BlockStatus.FAILED:
		return _abort(state, effects, '{} block {} error: {}.'.format(layout.name, verb, block.error))

	effects.append(Status(describe_block('{} block {}.'.format(layout.name, verb), block), logging.DEBUG))
	if not phase.write:
		output = state.config.flash_output if layout is FLASH else state.config.eeprom_output
		effects.append(AppendFile(output, block.data))

	cursor = state.cursor + layout.block_size
	effects.append(Progress(phase.worker, cursor, state.total))
	state = _received(state.evolve(cursor=cursor), effects)

	if cursor >= state.total:
		return _request(state, effects, exit_packet(state.worker, state.chip_index))
	return _next(state, effects)

def _on_error_byte (state, data, effects):
	ident = data[0]
	flash = state.task in FLASH_TASKS
	eeprom = state.task in EEPROM_TASKS

	if ident == SciId.BLOCK_SIZE_ERROR.value:
		if flash:
			reason = 'Flash block size error.'
		elif eeprom:
			reason = 'EEPROM block size error.'
		else:
			reason = 'Block size error.'
	elif ident == SciId.OFFSET_ERROR.value and eeprom:
		reason = 'EEPROM offset error.'
	elif ident in ERASE_ERRORS and state.task == Task.ERASE_FLASH_MEMORY:
		reason = 'Flash erase error 0x{:02X}.'.format(ident)
	else:
		reason = 'Error 0x{:02X}.'.format(ident)
	return _abort(state, effects, reason)

def _info_start_bootloader (data, config):
	if len(data) == 4 and data[3] == 0x22:
		return 'Start bootloader. OK.'
	if len(data) == 3:
		return 'Start bootloader. Error.'
	return None

def _info_upload_bootloader (data, config):
	if len(data) < 5:
		return None
	start = int.from_bytes(data[1:3], 'big')
	end = int.from_bytes(data[3:5], 'big')
	result = 'OK' if end - start + 1 == len(data) - 5 else 'Error'
	return 'Upload bootloader: {}. {}.'.format(BOOTLOADER_NAMES[config.bootloader], result)

INFO_HANDLERS = {
	SciId.BOOTSTRAP_BAUDRATE_SET.value: lambda data, config: 'Set bootstrap baudrate to 62500 baud. OK.',
	SciId.BOOTSTRAP_SEED_KEY_RESPONSE.value: lambda data, config: 'Unlock bootstrap mode security. OK.' if bytes(data) == SEED_KEY_ACCEPTED else None,
	SciId.BOOTSTRAP_MODE_NOT_PROTECTED.value: lambda data, config: 'Bootstrap mode is not protected.' if bytes(data) == BOOTSTRAP_NOT_PROTECTED else None,
	SciId.START_BOOTLOADER.value: _info_start_bootloader,
	SciId.UPLOAD_BOOTLOADER.value: _info_upload_bootloader,
}

ERROR_BYTES = (SciId.BLOCK_SIZE_ERROR.value, SciId.OFFSET_ERROR.value) + ERASE_ERRORS

def _on_sci (state, data, effects):
	if not data:
		return state
	ident = data[0]

	if ident in INFO_HANDLERS:
		message = INFO_HANDLERS[ident](data, state.config)
		if message:
			effects.append(Status(message))
		return state
	if ident == SciId.BOOTSTRAP_SEED_KEY_REQUEST.value:
		effects.append(Status('Bootstrap security seed: {}.'.format(bytes(data).hex(' ').upper()), logging.DEBUG))
		return state
	if ident == SciId.START_WORKER_FUNCTION.value:
		return _on_start(state, data, effects)
	if ident == SciId.EXIT_WORKER_FUNCTION.value:
		return _on_exit(state, data, effects)
	if ident in ERROR_BYTES:
		return _on_error_byte(state, data, effects)
	if state.task in BLOCK_PHASES:
		return _on_block(state, data, effects)
	return state

def _on_prog_volt (state, packet, effects):
	if not packet.payload:
		return state
	value = packet.payload[0]

	if value & 0x80:
		effects.append(Status('Apply VBB (12V) to SCI-RX pin.'))
		return state
	if value & 0x40:
		effects.append(Status('Apply VPP (20V) to SCI-RX pin.'))
		return state
	if value != 0:
		return state

	effects.append(Status('VBB/VPP removed from SCI-RX pin.'))
	if not _is_outstanding(state, DebugMode.START_WORKER_FUNCTION):
		return state

	if state.task == Task.DETECT_FLASH_MEMORY_TYPE and state.worker == WorkerFunction.FLASH_ID and state.flash_chip is not None:
		return _after_detect(_received(state, effects), effects)

	if state.task == Task.ERASE_FLASH_MEMORY and state.worker == WorkerFunction.FLASH_ERASE:
		if not state.erase_ok:
			return _abort(state, effects, 'Flash memory erase failed.')
		return _advance(state, effects, Task.WRITE_FLASH_MEMORY)
	return state

def _on_voltages (state, packet, effects):
	if state.task != Task.CHECK_VOLTAGES or not state.awaiting:
		return state
	voltages = parse_voltages(packet.payload)
	if voltages is None:
		return state

	lines = voltages.describe()
	effects.append(Status(lines[0], blank_line=True))
	for line in lines[1:]:
		effects.append(Status(line))

	violations = check_voltages(voltages)
	if violations:
		for line in violations[:-1]:
			effects.append(Status(line, logging.ERROR))
		return _abort(state, effects, violations[-1])

	effects.append(Status('All voltages are nominal.', blank_line=True))
	state = _received(state, effects)
	if not is_jtec(state.config.bootloader):
		return _advance(state, effects, Task.READ_PART_NUMBER)

	_headline(state, effects, 2, 'Skip part number read.')
	return _after_part_number(state, effects)

def _on_upload_result (state, packet, effects):
	if not _is_outstanding(state, DebugMode.UPLOAD_WORKER_FUNCTION) or not packet.payload:
		return state
	try:
		result = WorkerFunctionError(packet.payload[0])
	except ValueError:
		return _abort(state, effects, 'Worker function status: unknown.')

	if result != WorkerFunctionError.OK:
		return _abort(state, effects, 'Worker function status: {}.'.format(WORKER_FUNCTION_ERROR_MESSAGES[result]))

	effects.append(Status('Worker function uploaded.', logging.DEBUG))
	state = _received(state, effects)
	if state.worker == WorkerFunction.FLASH_ERASE:
		# flash contents can't be trusted from here on
		state = state.evolve(destructive=True)
	return _request(state, effects, start_packet(state.worker, state.chip_index))

def _on_bootstrap_result (state, packet, effects):
	if state.task != Task.INIT_BOOTSTRAP_MODE or not _is_outstanding(state, DebugMode.INIT_BOOTSTRAP_MODE) or not packet.payload:
		return state
	try:
		result = BootloaderError(packet.payload[0])
	except ValueError:
		return _abort(state, effects, 'Bootstrap status: unknown.')

	if result != BootloaderError.OK:
		return _abort(state, effects, 'Bootstrap status: {}.'.format(BOOTLOADER_ERROR_MESSAGES[result]))

	effects.append(Status('Bootstrap mode initialized successfully.'))
	state = _received(state, effects)
	return _advance(state, effects, Task.FINISH_BOOTSTRAP)

USB_HANDLERS = {
	(Command.SETTINGS, SettingsMode.SET_PROG_VOLT.value): _on_prog_volt,
	(Command.RESPONSE, ResponseMode.ALL_VOLTS.value): _on_voltages,
	(Command.DEBUG, DebugMode.UPLOAD_WORKER_FUNCTION.value): _on_upload_result,
	(Command.DEBUG, DebugMode.INIT_BOOTSTRAP_MODE.value): _on_bootstrap_result,
}

# events

def _on_packet_received (state, event, effects):
	packet = event.packet
	if packet.bus == Bus.USB:
		handler = USB_HANDLERS.get((packet.command, packet.mode))
		if handler is None:
			return state
		return handler(state, packet, effects)
	if packet.bus in (Bus.PCM, Bus.TCM) and packet.command == Command.MSG_RX:
		return _on_sci(state, packet.sci_bytes(), effects)
	return state

def _on_rx_timeout (state, effects):
	if state.task == Task.INIT_BOOTSTRAP_MODE:
		# entering bootstrap mode again needs a key cycle, there's nothing to retry
		return _abort(state, effects, NO_RESPONSE_MESSAGE)
	retries = state.rx_retries + 1
	if retries > state.config.timing.max_retries:
		return _abort(state, effects, NO_RESPONSE_MESSAGE)
	effects.append(Status('Receive timeout, retry {}.'.format(retries), logging.DEBUG))
	return _request(state.evolve(rx_retries=retries), effects, *state.outstanding)

def _on_tx_timeout (state, effects):
	retries = state.tx_retries + 1
	if retries > state.config.timing.max_retries:
		return _abort(state, effects, 'Transmission to the scanner failed.')
	effects.append(Status('Transmit timeout, retry {}.'.format(retries), logging.DEBUG))
	return _request(state.evolve(tx_retries=retries), effects, *state.outstanding)

def _on_timer_expired (state, event, effects):
	if event.request_id != state.request_id:
		return state

	if event.timer == Timer.NEXT_REQUEST:
		if state.awaiting:
			return state
		return TICK_HANDLERS[state.task](state, effects)

	if not state.awaiting or state.awaiting_operator or not state.outstanding:
		return state
	if event.timer == Timer.RX_TIMEOUT:
		return _on_rx_timeout(state, effects)
	return _on_tx_timeout(state, effects)

def _on_transmit_confirmed (state, event, effects):
	if state.awaiting:
		effects.append(CancelTimer(Timer.TX_TIMEOUT))
	return state

def _on_cancel_requested (state, event, effects):
	return _stop(state, effects, Cancelled(state.destructive))

def _on_operator_acknowledged (state, event, effects):
	if not state.awaiting_operator:
		return state

	if not event.accepted:
		effects.append(Status('ECU bootstrapping is cancelled.', logging.WARNING))
		return _stop(state, effects, Cancelled())

	if state.bootstrap_step == 0:
		effects.append(Status('Scanner SCI-bus speed is set to 62500 baud.'))
		effects.append(BusSpeed(True))
		effects.append(Send(_prog_volt_packet(0x80)))
		effects.append(Status('Turn key to RUN position.'))
		effects.append(OperatorPrompt('Turn key to RUN position. Do not start the engine.'))
		return state.evolve(bootstrap_step=1)

	effects.append(Send(_prog_volt_packet(0x00)))
	effects.append(Status('Bootloader: {}.'.format(BOOTLOADER_NAMES[state.config.bootloader])))
	state = state.evolve(awaiting_operator=False, bootstrap_step=2)
	init = Packet(Bus.USB, Command.DEBUG, DebugMode.INIT_BOOTSTRAP_MODE.value, bytes([state.config.bootloader.value, state.chip_index]))
	return _request(state, effects, init)

def _on_fault (state, event, effects):
	return _abort(state, effects, event.reason)

EVENT_HANDLERS = {
	TimerExpired: _on_timer_expired,
	PacketReceived: _on_packet_received,
	TransmitConfirmed: _on_transmit_confirmed,
	CancelRequested: _on_cancel_requested,
	OperatorAcknowledged: _on_operator_acknowledged,
	Fault: _on_fault,
}

def initial_task (config, flash_chip) -> Task:
	if config.operation == Operation.BOOTSTRAP:
		return Task.INIT_BOOTSTRAP_MODE
	if config.operation == Operation.READ_FLASH:
		return Task.READ_FLASH_MEMORY if flash_chip else Task.DETECT_FLASH_MEMORY_TYPE
	if config.operation == Operation.WRITE_FLASH:
		return Task.CHECK_VOLTAGES
	if config.operation == Operation.READ_EEPROM:
		return Task.READ_EEPROM
	return Task.WRITE_EEPROM

def start (config):
	flash_chip = config.flash_chip or default_flash_chip(config.bootloader)
	state = SessionState(
		config=config,
		task=initial_task(config, flash_chip),
		flash_chip=flash_chip,
		request_id=1
	)
	effects = (
		Status(SESSION_START_MESSAGES[config.operation], blank_line=True),
		ArmTimer(Timer.NEXT_REQUEST, 0, state.request_id),
	)
	return state, effects

def step (state: SessionState, event):
	if not state.active:
		return state, ()
	handler = EVENT_HANDLERS.get(type(event))
	if handler is None:
		return state, ()
	effects = []
	state = handler(state, event, effects)
	return state, tuple(effects)
