from dispatchgate.tickets.repository import TicketRepository

__all__ = ["TicketRepository"]
