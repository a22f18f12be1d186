from chainmirror.main import main

main()
