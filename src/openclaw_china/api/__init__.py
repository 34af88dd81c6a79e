"""
回调 HTTP 服务

create_app() 挂载各平台事件回调与健康检查路由。
"""
