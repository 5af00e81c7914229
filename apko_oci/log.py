import copy
import logging
import sys


class Bcolors:
    RESET_ALL = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'


class ApkoOciFormatter(logging.Formatter):
    level_colors = {
        logging.DEBUG: Bcolors.BLUE,
        logging.INFO: Bcolors.GREEN,
        logging.WARNING: Bcolors.YELLOW,
        logging.ERROR: Bcolors.RED,
    }

    def __init__(self, *args, colorise: bool=None, **kwargs):
        super().__init__(*args, **kwargs)
        if colorise is None:
            colorise = sys.stderr.isatty()
        self.colorise = colorise

    def color_level_name(self, level_name: str, level_number: int) -> str:
        if not (color := self.level_colors.get(level_number)):
            return level_name
        return f'{Bcolors.BOLD}{color}{level_name}{Bcolors.RESET_ALL}'

    def formatMessage(self, record):
        record_copy = copy.copy(record)
        levelname = record_copy.levelname
        if self.colorise:
            levelname = self.color_level_name(levelname, record_copy.levelno)
        record_copy.__dict__['levelprefix'] = levelname
        return super().formatMessage(record_copy)


def default_fmt_string(print_thread_id: bool=False):
    ptid = print_thread_id
    return f'%(asctime)s [%(levelprefix)s] {"TID:%(thread)d " if ptid else ""}%(name)s: %(message)s'


def configure_default_logging(
    stdout_level=None,
    force=True,
    print_thread_id=False,
):
    if not stdout_level:
        stdout_level = logging.INFO

    # make sure to have a clean root logger (in case setup is called multiple times)
    if force:
        for h in tuple(logging.root.handlers):
            logging.root.removeHandler(h)
            h.close()

    sh = logging.StreamHandler()
    sh.setLevel(stdout_level)
    sh.setFormatter(ApkoOciFormatter(fmt=default_fmt_string(print_thread_id=print_thread_id)))

    logging.root.addHandler(hdlr=sh)
    logging.root.setLevel(level=stdout_level)

    # too verbose
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('apko_oci.client.request_logger').setLevel(logging.INFO)
