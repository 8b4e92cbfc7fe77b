# 実行器とのメッセージプロトコル
# 送信メッセージの組み立て、受信メッセージの解析とディスパッチを提供
