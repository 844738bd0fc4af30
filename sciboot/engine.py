import os, queue, logging, threading
from dataclasses import replace
from . import machine
from .scheduler import Scheduler
from .status import logger as status_logger, blank_line
from .transfer import progress_text
from .transport import Transport
from .session import (
	SessionConfig, SessionState, SessionBusyException, validate_config,
	TimerExpired, PacketReceived, TransmitConfirmed, CancelRequested, OperatorAcknowledged, Fault,
	Send, ArmTimer, CancelTimer, TruncateFile, AppendFile, Status, Progress, OperatorPrompt, BusSpeed, Finished
)

logger = logging.getLogger(__name__)

def decline_prompt (message: str) -> bool:
	status_logger.warning('No operator to confirm: {}'.format(message))
	return False

class Engine:
	'''
	Single owner of the session state. Transport callbacks, timers and cancel()
	only put events on the queue, one consumer feeds them through machine.step
	and carries out the effects it returns.
	'''
	def __init__ (self, transport: Transport, progress_callback=None, operator_callback=None):
		self.transport = transport
		self.progress_callback = progress_callback
		self.operator_callback = operator_callback or decline_prompt
		self.events = queue.Queue()
		self.scheduler = Scheduler(self._on_timer)
		self.state = SessionState()
		self.outcome = None
		self._busy = False
		self._lock = threading.Lock()
		self._thread = None
		transport.set_receiver(self.on_packet, self.on_transmitted)

		self._effect_handlers = {
			Send: self._send,
			ArmTimer: self._arm_timer,
			CancelTimer: self._cancel_timer,
			TruncateFile: self._truncate_file,
			AppendFile: self._append_file,
			Status: self._status,
			Progress: self._progress,
			OperatorPrompt: self._operator_prompt,
			BusSpeed: self._bus_speed,
			Finished: self._finished,
		}

	# producers, safe to call from any thread

	def on_packet (self, packet):
		self.events.put(PacketReceived(packet))

	def on_transmitted (self):
		self.events.put(TransmitConfirmed())

	def cancel (self):
		self.events.put(CancelRequested())

	def _on_timer (self, timer, request_id):
		self.events.put(TimerExpired(timer, request_id))

	@property
	def busy (self) -> bool:
		with self._lock:
			return self._busy

	# session lifecycle

	def run (self, config: SessionConfig):
		''' Runs a whole session on the calling thread and returns its outcome '''
		config = self._begin(config)
		return self._session(config)

	def start (self, config: SessionConfig):
		config = self._begin(config)
		self._thread = threading.Thread(target=self._session, args=(config,), daemon=True)
		self._thread.start()

	def wait (self, timeout=None):
		if self._thread:
			self._thread.join(timeout)
			if self._thread.is_alive():
				return None
		return self.outcome

	def _begin (self, config: SessionConfig) -> SessionConfig:
		validate_config(config)
		with self._lock:
			if self._busy:
				raise SessionBusyException('A session is already running')
			self._busy = True
		self._drain()
		self.outcome = None
		return replace(config, confirms_transmit=self.transport.confirms_transmit)

	def _session (self, config: SessionConfig):
		try:
			self.state, effects = machine.start(config)
			self._execute(effects)
			while self.state.active:
				event = self.events.get()
				self.state, effects = machine.step(self.state, event)
				self._execute(effects)
			return self.outcome
		finally:
			self.scheduler.cancel_all()
			with self._lock:
				self._busy = False

	def _drain (self):
		# leftovers from a previous session must not leak into this one
		while True:
			try:
				self.events.get_nowait()
			except queue.Empty:
				return

	# effects

	def _execute (self, effects):
		for effect in effects:
			self._effect_handlers[type(effect)](effect)

	def _send (self, effect: Send):
		try:
			self.transport.send(effect.packet)
		except OSError as e:
			logger.debug('Transport failure', exc_info=True)
			self.events.put(Fault('Transport error: {}'.format(e)))

	def _arm_timer (self, effect: ArmTimer):
		self.scheduler.arm(effect.timer, effect.delay_ms, effect.request_id)

	def _cancel_timer (self, effect: CancelTimer):
		self.scheduler.cancel(effect.timer)

	def _truncate_file (self, effect: TruncateFile):
		try:
			directory = os.path.dirname(effect.filename)
			if directory:
				os.makedirs(directory, exist_ok=True)
			with open(effect.filename, 'wb'):
				pass
		except OSError as e:
			self.events.put(Fault('Unable to create {}: {}'.format(effect.filename, e)))

	def _append_file (self, effect: AppendFile):
		try:
			with open(effect.filename, 'ab') as file:
				file.write(effect.data)
		except OSError as e:
			self.events.put(Fault('Unable to write {}: {}'.format(effect.filename, e)))

	def _status (self, effect: Status):
		if effect.blank_line:
			blank_line()
		status_logger.log(effect.level, effect.message)

	def _progress (self, effect: Progress):
		logger.debug('Progress: %s', progress_text(effect.cursor, effect.total))
		if self.progress_callback:
			self.progress_callback(effect.worker, effect.cursor, effect.total)

	def _operator_prompt (self, effect: OperatorPrompt):
		accepted = self.operator_callback(effect.message)
		self.events.put(OperatorAcknowledged(bool(accepted)))

	def _bus_speed (self, effect: BusSpeed):
		try:
			self.transport.set_bus_speed(effect.high_speed)
		except OSError as e:
			logger.debug('Transport failure', exc_info=True)
			self.events.put(Fault('Transport error: {}'.format(e)))

	def _finished (self, effect: Finished):
		logger.debug('Session finished: %s', effect.outcome)
		self.outcome = effect.outcome
