"""业务层 - 预约时间轴、状态生命周期、结算与报表

- clock / timeline: 本地时间解析与时间轴几何
- lifecycle: 预约与套餐状态机、周期扫描
- appointments: 预约的创建、编辑、改期、调整时长、取消
- interaction: 拖拽改期 / 调整时长的交互状态机
- settlement: 提成与手续费的纯计算
- billing / packages: 结算、赊账还款、套餐售卖与使用
- reporting: 收入与提成报表
- scheduler: APScheduler 周期任务
"""
