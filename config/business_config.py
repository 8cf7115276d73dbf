"""
业务配置接口 - 支持可替换的业务配置

新门店可以实现自己的业务配置（服务目录、支付方式、员工），替换默认配置。
"""
from abc import ABC, abstractmethod
from typing import List, Dict, Any


class BusinessConfig(ABC):
    """业务配置抽象基类"""

    @abstractmethod
    def get_service_catalog(self) -> List[Dict[str, Any]]:
        """获取服务目录（名称、时长、基础价格）"""
        pass

    @abstractmethod
    def get_payment_methods(self) -> List[Dict[str, Any]]:
        """获取支付方式及手续费率"""
        pass

    @abstractmethod
    def get_workers(self) -> List[Dict[str, Any]]:
        """获取初始员工及提成比例"""
        pass


class SalonConfig(BusinessConfig):
    """美发美甲沙龙业务配置"""

    def get_service_catalog(self) -> List[Dict[str, Any]]:
        return [
            {"name": "Corte", "duration_minutes": 60, "base_price": 80.0},
            {"name": "Escova", "duration_minutes": 45, "base_price": 50.0},
            {"name": "Manicure", "duration_minutes": 40, "base_price": 35.0},
            {"name": "Pedicure", "duration_minutes": 50, "base_price": 40.0},
            {"name": "Coloração", "duration_minutes": 120, "base_price": 180.0},
            {"name": "Hidratação", "duration_minutes": 60, "base_price": 90.0},
            {"name": "Sobrancelha", "duration_minutes": 20, "base_price": 30.0},
            {"name": "Maquiagem", "duration_minutes": 60, "base_price": 150.0},
        ]

    def get_payment_methods(self) -> List[Dict[str, Any]]:
        # credit / promotional 为保留代码，手续费恒为 0
        return [
            {"code": "dinheiro", "name": "Dinheiro", "fee_percentage": 0.0},
            {"code": "pix", "name": "PIX", "fee_percentage": 0.0},
            {"code": "cartao_debito", "name": "Cartão de Débito", "fee_percentage": 1.99},
            {"code": "cartao_credito", "name": "Cartão de Crédito", "fee_percentage": 3.0},
            {"code": "credit", "name": "Fiado", "fee_percentage": 0.0},
            {"code": "promotional", "name": "Troca/Grátis", "fee_percentage": 0.0},
        ]

    def get_workers(self) -> List[Dict[str, Any]]:
        return [
            {"name": "Ana", "commission_percentage": 50.0},
            {"name": "Bruna", "commission_percentage": 40.0},
        ]


# 全局业务配置实例（可以在 app.py 中替换）
business_config: BusinessConfig = SalonConfig()
