import logging, threading
from enum import Enum
logger = logging.getLogger(__name__)

class Timer (Enum):
	NEXT_REQUEST = 'next request'
	RX_TIMEOUT = 'receive timeout'
	TX_TIMEOUT = 'transmit timeout'

class Scheduler:
	'''
	One-shot timers keyed by Timer. Arming a timer replaces the previous one of the same kind.
	Expiry only calls post(timer, request_id), the owner decides what it means.
	'''
	def __init__ (self, post):
		self.post = post
		self._timers = {}
		self._lock = threading.Lock()

	def arm (self, timer: Timer, delay_ms: int, request_id: int):
		with self._lock:
			self._cancel(timer)
			handle = threading.Timer(delay_ms / 1000, self._fire, args=(timer, request_id))
			handle.daemon = True
			self._timers[timer] = handle
			handle.start()

	def cancel (self, timer: Timer):
		with self._lock:
			self._cancel(timer)

	def cancel_all (self):
		with self._lock:
			for timer in list(self._timers):
				self._cancel(timer)

	def _cancel (self, timer: Timer):
		handle = self._timers.pop(timer, None)
		if handle:
			handle.cancel()

	def _fire (self, timer: Timer, request_id: int):
		with self._lock:
			handle = self._timers.get(timer)
			if handle is not None and handle is threading.current_thread():
				del self._timers[timer]
		logger.debug('%s expired (request %s)', timer.value, request_id)
		self.post(timer, request_id)
