"""
Delivery channels.

A channel is anything that can put a PendingRequest in front of a human and,
eventually, hand back an answer. The correlation engine only knows this
small interface:

  channel.name                 unique label, recorded in delivered_to
  channel.deliver(request)     non-blocking; True if the request went somewhere
  channel.cancel(request_id)   best-effort withdrawal

Answers flow back by calling the resolve(request_id, Answer) callable the
channel was constructed with (PendingRegistry.resolve in practice).
"""
import logging
import threading

from askrelay.models import Answer, PendingRequest

log = logging.getLogger("askrelay.channels")


class DeliveryChannel:
    name = "channel"

    def deliver(self, request: PendingRequest) -> bool:
        raise NotImplementedError

    def cancel(self, request_id: str):
        pass


class DisplayChannel(DeliveryChannel):
    """
    Local display: runs display(request) -> answer payload on its own thread
    per request, so several requests can be on screen at once.
    """

    def __init__(self, display, resolve, name: str = "display"):
        self.name = name
        self._display = display
        self._resolve = resolve
        self._active: set[str] = set()
        self._lock = threading.Lock()

    def deliver(self, request: PendingRequest) -> bool:
        with self._lock:
            self._active.add(request.id)
        threading.Thread(target=self._show, args=(request,), daemon=True,
                         name=f"display-{request.id[:8]}").start()
        return True

    def cancel(self, request_id: str):
        # A popup that is already on screen cannot be pulled back; forgetting
        # the id just stops us from reporting its answer.
        with self._lock:
            self._active.discard(request_id)

    def in_flight(self) -> int:
        with self._lock:
            return len(self._active)

    def _show(self, request: PendingRequest):
        try:
            result = self._display(request)
        except Exception as exc:
            log.warning("Display of request %s failed: %s", request.id, exc)
            with self._lock:
                self._active.discard(request.id)
            return

        with self._lock:
            wanted = request.id in self._active
            self._active.discard(request.id)
        if not wanted:
            log.debug("Display answered cancelled request %s — dropped", request.id)
            return

        if isinstance(result, Answer):
            payload = result.payload
        else:
            payload = result if isinstance(result, dict) else {"text": str(result)}
        self._resolve(request.id, Answer(request.id, payload, self.name))


class BotChannel(DeliveryChannel):
    """
    Contract for a third-party messaging bot.

    Subclasses implement deliver() by posting the request to their service
    and call answer() from whatever polling loop or webhook receives the
    human's reply.
    """
    name = "bot"

    def __init__(self, resolve):
        self._resolve = resolve

    def answer(self, request_id: str, payload: dict) -> bool:
        return self._resolve(request_id, Answer(request_id, payload, self.name))
