# app/hooks.py
class NoopHooks:
    def run_start(self, **_):
        pass

    def run_end(self, **_):
        pass

    def task_state(self, *_, **__):
        pass

    def task_start(self, *_, **__):
        pass

    def task_warning(self, *_, **__):
        pass

    def task_end(self, *_, **__):
        pass

    def task_failed(self, *_, **__):
        pass

    def halted(self, *_, **__):
        pass
