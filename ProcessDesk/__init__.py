r"""
    ____                                   ____            __
   / __ \_________  ________  __________  / __ \___  _____/ /__
  / /_/ / ___/ __ \/ ___/ _ \/ ___/ ___/ / / / / _ \/ ___/ //_/
 / ____/ /  / /_/ / /__/  __(__  |__  ) / /_/ /  __(__  ) ,<
/_/   /_/   \____/\___/\___/____/____/ /_____/\___/____/_/|_|

ProcessDesk - process tracking with live presence and chat.

The real-time side of the application: who is online, person-to-person
messages, and the "refetch your data" signal sent after every REST write.
"""

__version__ = "1.0.0"
