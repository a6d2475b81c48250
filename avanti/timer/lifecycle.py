import atexit
import inspect
import logging

logger = logging.getLogger(__name__)

VISIBLE = "visible"
HIDDEN = "hidden"


class PageLifecycle:
    """
    Visibility and unload notifications for one client process.

    Hosts report visibility changes (a minimized window, a suspended
    terminal) with set_visibility(), and call unload() when going away.
    Visibility handlers may be coroutines; unload handlers must be plain
    functions because the event loop may already be gone.
    """

    def __init__(self):
        self.visibility_state = VISIBLE
        self.unloaded = False
        self._visibility_handlers = []
        self._unload_handlers = []
        self._exit_hook_installed = False

    def add_visibility_handler(self, handler):
        if handler not in self._visibility_handlers:
            self._visibility_handlers.append(handler)

    def remove_visibility_handler(self, handler):
        if handler in self._visibility_handlers:
            self._visibility_handlers.remove(handler)

    def add_unload_handler(self, handler):
        if handler not in self._unload_handlers:
            self._unload_handlers.append(handler)

    def remove_unload_handler(self, handler):
        if handler in self._unload_handlers:
            self._unload_handlers.remove(handler)

    @property
    def handler_count(self):
        return len(self._visibility_handlers) + len(self._unload_handlers)

    async def set_visibility(self, state):
        if state not in (VISIBLE, HIDDEN):
            raise ValueError(f"Unknown visibility state: {state}")
        if state == self.visibility_state:
            return
        self.visibility_state = state
        logger.info(f"Visibility changed to {state}")
        for handler in list(self._visibility_handlers):
            result = handler(state)
            if inspect.isawaitable(result):
                await result

    def unload(self):
        if self.unloaded:
            return
        self.unloaded = True
        logger.info("Unloading, flushing open sessions")
        for handler in list(self._unload_handlers):
            handler()

    def install_exit_hook(self):
        """Run unload() at interpreter exit"""
        if not self._exit_hook_installed:
            atexit.register(self.unload)
            self._exit_hook_installed = True
