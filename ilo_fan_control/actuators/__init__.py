from .fan_controller import FanControlBusy, FanController, InvalidFanIndex, InvalidFanSpeed

__all__ = ['FanController', 'FanControlBusy', 'InvalidFanIndex', 'InvalidFanSpeed']
