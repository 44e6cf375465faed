"""Built-in handlers that do not launch a robot."""

from robot_worker.handlers.print_variables import PrintVariablesHandler
from robot_worker.handlers.send_mail import SendMailHandler

__all__ = ["PrintVariablesHandler", "SendMailHandler"]
