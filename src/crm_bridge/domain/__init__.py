from src.crm_bridge.domain.manager import DomainManager

__all__ = ["DomainManager"]
